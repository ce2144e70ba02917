"""YamlManifestIndex：查询、源码拉取与缓存校验"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from rockforge.core.exceptions import CorruptArtifact, PackageNotFoundError, ValidationError
from rockforge.core.index import YamlManifestIndex
from rockforge.core.models import BackendKind, ResolvedPackage, parse_package_id
from rockforge.core.version import parse
from rockforge.utils.archive import pack_directory
from rockforge.utils.hashing import integrity_of_bytes


def node(text: str, source: str = "", integrity: str | None = None) -> ResolvedPackage:
    return ResolvedPackage(id=parse_package_id(text), source=source, integrity=integrity)


@pytest.fixture()
def src_dir(tmp_path: Path) -> Path:
    src = tmp_path / "sources" / "json-2.0"
    src.mkdir(parents=True)
    (src / "json.lua").write_text("return {}\n", encoding="utf-8")
    return src


@pytest.fixture()
def index(tmp_path: Path, src_dir: Path) -> YamlManifestIndex:
    data = {"packages": {
        "json": {
            "2.0": {
                "source": "sources/json-{version}",
                "dependencies": {"base": ">= 1.0"},
                "build": {"type": "command", "build_command": "make", "install_command": "make install"},
            },
            "1.10": {"source": "sources/json-2.0"},
            "1.9": {},
        },
        "base": {"1.0": {}},
    }}
    return YamlManifestIndex(data, base_dir=tmp_path, cache_dir=tmp_path / "cache")


class TestQuery:
    def test_versions_sorted(self, index: YamlManifestIndex) -> None:
        assert [str(e.version) for e in index.list_versions("json")] == ["1.9", "1.10", "2.0"]
        assert index.names() == ["base", "json"]

    def test_get(self, index: YamlManifestIndex) -> None:
        entry = index.get("json", "2.0")
        assert entry.id == parse_package_id("json@2.0")
        assert [d.name for d in entry.dependencies] == ["base"]
        assert entry.build_spec.kind is BackendKind.COMMAND
        assert entry.build_spec.install_command == "make install"
        assert index.get("json", parse("2.0.0")).version == parse("2.0")

    def test_missing(self, index: YamlManifestIndex) -> None:
        with pytest.raises(PackageNotFoundError):
            index.list_versions("ghost")
        with pytest.raises(PackageNotFoundError, match="json@3.0"):
            index.get("json", "3.0")

    def test_unknown_backend(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="构建后端"):
            YamlManifestIndex({"packages": {"a": {"1.0": {"build": {"type": "scons"}}}}})

    def test_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "index.yml"
        path.write_text("packages:\n  a:\n    '1.0': {source: src/a}\n", encoding="utf-8")
        index = YamlManifestIndex.from_file(path, cache_dir=tmp_path / "cache")
        assert index.base_dir == tmp_path
        assert index.get("a", "1.0").source == "src/a"


class TestFetch:
    def test_local_dir_with_version_placeholder(self, index: YamlManifestIndex, src_dir: Path) -> None:
        data, integrity = index.fetch_source(node("json@2.0"))
        assert data == pack_directory(src_dir)
        assert integrity == integrity_of_bytes(data)
        assert index.cache_path(node("json@2.0")).read_bytes() == data

    def test_cache_hit(self, index: YamlManifestIndex, src_dir: Path) -> None:
        first = index.fetch_source(node("json@2.0"))
        (src_dir / "json.lua").unlink()
        assert index.fetch_source(node("json@2.0", integrity=first[1])) == first

    def test_corrupt_cache_refetched(self, index: YamlManifestIndex, src_dir: Path) -> None:
        data, integrity = index.fetch_source(node("json@2.0"))
        cached = index.cache_path(node("json@2.0"))
        cached.write_bytes(b"garbage")
        again, again_integrity = index.fetch_source(node("json@2.0", integrity=integrity))
        assert again == data and again_integrity == integrity
        assert cached.read_bytes() == data

    def test_source_mismatch(self, index: YamlManifestIndex) -> None:
        with pytest.raises(CorruptArtifact) as exc:
            index.fetch_source(node("json@2.0", integrity="sha256-" + "f" * 64))
        assert exc.value.package == "json@2.0"
        assert not index.cache_path(node("json@2.0")).exists()

    def test_missing_locator(self, index: YamlManifestIndex) -> None:
        with pytest.raises(ValidationError, match="源码位置"):
            index.fetch_source(node("json@1.9"))

    def test_missing_path(self, index: YamlManifestIndex) -> None:
        with pytest.raises(FileNotFoundError):
            index.fetch_source(node("json@1.9", source="sources/nowhere"))

    def test_remote(self, index: YamlManifestIndex) -> None:
        with patch("rockforge.core.index.download_bytes", return_value=b"tarball") as dl:
            data, integrity = index.fetch_source(
                node("base@1.0", source="https://example.org/base-{version}.tar.gz"),
            )
        assert data == b"tarball"
        assert integrity == integrity_of_bytes(b"tarball")
        assert dl.call_args.args[0] == "https://example.org/base-1.0.tar.gz"
