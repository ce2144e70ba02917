"""URL 校验与下载测试"""

from __future__ import annotations

import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from rockforge.core.exceptions import ValidationError
from rockforge.utils.net import download_bytes, validate_url_scheme


class TestValidateUrlScheme:
    @pytest.mark.parametrize("url", ["http://example.com/a.tar.gz", "https://example.com/a"])
    def test_allowed(self, url: str) -> None:
        validate_url_scheme(url)

    @pytest.mark.parametrize("url", ["file:///etc/passwd", "ftp://evil.com/x", "/local/path"])
    def test_rejected(self, url: str) -> None:
        with pytest.raises(ValidationError, match="不允许的 URL 协议"):
            validate_url_scheme(url)

    def test_context_in_error(self) -> None:
        with pytest.raises(ValidationError, match="source lfs"):
            validate_url_scheme("file:///x", context="source lfs")


class TestDownloadBytes:
    def test_reads_body(self) -> None:
        resp = MagicMock()
        resp.read.return_value = b"payload"
        resp.__enter__.return_value = resp
        with patch("rockforge.utils.net.urllib.request.urlopen", return_value=resp) as opener:
            assert download_bytes("https://example.com/a", timeout=5) == b"payload"
        opener.assert_called_once_with("https://example.com/a", timeout=5)

    def test_network_error_becomes_connection_error(self) -> None:
        err = urllib.error.URLError("unreachable")
        with patch("rockforge.utils.net.urllib.request.urlopen", side_effect=err):
            with pytest.raises(ConnectionError, match="下载失败"):
                download_bytes("https://example.com/a")

    def test_scheme_checked_before_request(self) -> None:
        with patch("rockforge.utils.net.urllib.request.urlopen") as opener:
            with pytest.raises(ValidationError):
                download_bytes("file:///etc/passwd")
        opener.assert_not_called()
