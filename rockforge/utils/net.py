"""网络工具 - URL 校验与下载"""

from __future__ import annotations

import logging
import urllib.error
import urllib.request
from urllib.parse import urlparse

from rockforge.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = frozenset(("http", "https"))


def validate_url_scheme(url: str, *, context: str = "") -> None:
    """仅允许 http/https，拒绝 file:// 等非预期协议

    Raises:
        ValidationError: scheme 不在白名单内
    """
    parsed = urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        label = f" ({context})" if context else ""
        raise ValidationError(
            f"不允许的 URL 协议 '{parsed.scheme}'{label}，仅支持 http/https: {url}"
        )


def download_bytes(url: str, *, timeout: int = 60, context: str = "") -> bytes:
    """下载 URL 内容到内存

    Raises:
        ValidationError: URL 协议非法
        ConnectionError: 网络或 HTTP 错误
    """
    validate_url_scheme(url, context=context)
    logger.info("  下载: %s", url)
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:  # nosec B310
            return resp.read()
    except (urllib.error.HTTPError, urllib.error.URLError, OSError) as e:
        raise ConnectionError(f"下载失败: {url} - {e}") from e
