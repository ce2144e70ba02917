"""清单索引

ManifestIndex 协议是解析器与构建编排看到的唯一接口：
  - list_versions(name): 某包全部可用版本（升序）
  - get(name, version): 单个版本的清单条目
  - fetch_source(package): 拉取源码归档，返回 (bytes, 完整性摘要)

YamlManifestIndex 为默认实现，索引格式::

    packages:
      lua-cjson:
        "2.1.0-1":
          dependencies: {lua: ">= 5.1"}
          build_dependencies: {}
          build: {type: builtin, modules: {cjson: cjson.lua}}
          source: sources/lua-cjson          # 相对索引文件目录，或 http(s) URL
          integrity: sha256-...              # 可选，提供时拉取后强制校验

索引加载后只读，可被多个线程并发查询而无需加锁。
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Protocol

from rockforge.core.exceptions import CorruptArtifact, PackageNotFoundError, ValidationError
from rockforge.core.models import BuildSpec, ManifestEntry, PackageSpec, ResolvedPackage
from rockforge.core.version import parse
from rockforge.utils.archive import pack_directory
from rockforge.utils.hashing import integrity_of_bytes, integrity_of_file
from rockforge.utils.net import download_bytes
from rockforge.utils.yaml_io import atomic_write, load_yaml

logger = logging.getLogger(__name__)

ARCHIVE_NAME = "source.tar.gz"


class ManifestIndex(Protocol):
    """清单索引协议"""

    def list_versions(self, name: str) -> list[ManifestEntry]:
        ...

    def get(self, name: str, version: Any) -> ManifestEntry:
        ...

    def fetch_source(self, package: ResolvedPackage) -> tuple[bytes, str]:
        ...


def _parse_specs(raw: dict[str, Any] | None) -> list[PackageSpec]:
    return [PackageSpec.from_value(str(n), v) for n, v in sorted((raw or {}).items())]


class YamlManifestIndex:
    """基于 YAML 映射的清单索引，带本地源码缓存"""

    def __init__(
        self,
        data: dict[str, Any],
        *,
        base_dir: str | Path = ".",
        cache_dir: str | Path = ".rockforge/cache",
        download_timeout: int = 60,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.cache_dir = Path(cache_dir)
        self.download_timeout = download_timeout
        self._entries: dict[str, list[ManifestEntry]] = self._parse(data.get("packages") or {})
        # 同一身份的并发拉取串行化，不同身份互不阻塞
        self._fetch_locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @classmethod
    def from_file(cls, path: str | Path, *, cache_dir: str | Path = ".rockforge/cache") -> YamlManifestIndex:
        p = Path(path)
        data = load_yaml(p)
        logger.info("清单索引已加载: %s (%d 个包)", p, len(data.get("packages") or {}))
        return cls(data, base_dir=p.parent, cache_dir=cache_dir)

    @staticmethod
    def _parse(packages: dict[str, Any]) -> dict[str, list[ManifestEntry]]:
        result: dict[str, list[ManifestEntry]] = {}
        for name, versions in packages.items():
            if not isinstance(versions, dict):
                raise ValidationError(f"索引中 {name} 的版本表格式无效")
            entries = []
            for ver_text, meta in versions.items():
                meta = meta or {}
                entries.append(ManifestEntry(
                    name=str(name),
                    version=parse(str(ver_text)),
                    dependencies=_parse_specs(meta.get("dependencies")),
                    build_dependencies=_parse_specs(meta.get("build_dependencies")),
                    build_spec=BuildSpec.from_dict(meta.get("build")),
                    source=str(meta.get("source", "")),
                    integrity=meta.get("integrity"),
                ))
            result[str(name)] = sorted(entries, key=lambda e: e.version)
        return result

    # ---- 查询 ----

    def names(self) -> list[str]:
        return sorted(self._entries)

    def list_versions(self, name: str) -> list[ManifestEntry]:
        entries = self._entries.get(name)
        if entries is None:
            raise PackageNotFoundError(name, "清单索引中没有该包")
        return list(entries)

    def get(self, name: str, version: Any) -> ManifestEntry:
        target = version if not isinstance(version, str) else parse(version)
        for entry in self.list_versions(name):
            if entry.version == target:
                return entry
        raise PackageNotFoundError(f"{name}@{target}", "清单索引中没有该版本")

    # ---- 源码拉取 ----

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._fetch_locks.setdefault(key, threading.Lock())

    def cache_path(self, package: ResolvedPackage) -> Path:
        return self.cache_dir / package.name / str(package.version) / ARCHIVE_NAME

    def fetch_source(self, package: ResolvedPackage) -> tuple[bytes, str]:
        """拉取源码归档

        缓存命中时重新计算摘要；与期望摘要不符则丢弃缓存并重新拉取，
        重新拉取后仍不符抛 CorruptArtifact。

        Raises:
            CorruptArtifact: 源码摘要与期望不一致
            ConnectionError: 远程下载失败
            FileNotFoundError: 本地源码路径不存在
        """
        expected = package.integrity or ""
        cached = self.cache_path(package)
        with self._lock_for(str(package.id)):
            if cached.is_file():
                actual = integrity_of_file(cached)
                if not expected or actual == expected:
                    logger.info("源码缓存命中: %s", package.id)
                    return cached.read_bytes(), actual
                logger.warning(
                    "缓存产物校验失败，重新拉取: %s (期望 %s, 实际 %s)",
                    package.id, expected, actual,
                )
                cached.unlink()

            data = self._retrieve(package)
            actual = integrity_of_bytes(data)
            if expected and actual != expected:
                raise CorruptArtifact(str(package.id), expected, actual)
            atomic_write(cached, data)
            logger.info("源码已缓存: %s -> %s", package.id, cached)
            return data, actual

    def _retrieve(self, package: ResolvedPackage) -> bytes:
        locator = package.source
        if not locator:
            locator = self.get(package.name, package.version).source
        if not locator:
            raise ValidationError(f"{package.id} 未定义源码位置")
        locator = locator.replace("{version}", str(package.version))

        if "://" in locator:
            return download_bytes(
                locator, timeout=self.download_timeout, context=f"source {package.id}",
            )
        path = Path(locator)
        if not path.is_absolute():
            path = self.base_dir / path
        if path.is_dir():
            return pack_directory(path)
        if path.is_file():
            return path.read_bytes()
        raise FileNotFoundError(f"{package.id} 的源码路径不存在: {path}")
