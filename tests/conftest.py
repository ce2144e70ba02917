"""共享测试夹具：内存清单索引、源码目录与项目上下文"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from rockforge.core.config import Config
from rockforge.core.index import YamlManifestIndex
from rockforge.core.project import ProjectFile
from rockforge.services.context import ProjectContext


def write_source(root: Path, name: str, version: str) -> Path:
    """生成一个最小的 builtin 源码目录：<name>.lua + bin/<name>"""
    src = root / "sources" / f"{name}-{version}"
    (src / "bin").mkdir(parents=True, exist_ok=True)
    (src / f"{name}.lua").write_text(f"return '{name} {version}'\n", encoding="utf-8")
    (src / "bin" / name).write_text(f"#!/bin/sh\necho {name} {version}\n", encoding="utf-8")
    return src


def index_data(root: Path, packages: dict[str, dict[str, Any]]) -> dict[str, Any]:
    """把紧凑写法展开为索引映射，未指定 source/build 的版本自动生成源码目录"""
    table: dict[str, Any] = {}
    for name, versions in packages.items():
        table[name] = {}
        for ver, meta in versions.items():
            meta = dict(meta or {})
            if "source" not in meta:
                meta["source"] = str(write_source(root, name, ver))
            meta.setdefault("build", {"type": "builtin", "modules": {name: f"{name}.lua"}})
            table[name][ver] = meta
    return {"packages": table}


@pytest.fixture()
def make_index(tmp_path: Path) -> Callable[..., YamlManifestIndex]:
    def _make(packages: dict[str, dict[str, Any]]) -> YamlManifestIndex:
        return YamlManifestIndex(
            index_data(tmp_path, packages), base_dir=tmp_path, cache_dir=tmp_path / "cache",
        )
    return _make


@pytest.fixture()
def make_ctx(tmp_path: Path, make_index: Callable[..., YamlManifestIndex]) -> Callable[..., ProjectContext]:
    """项目根为 tmp_path 的上下文；dependencies 写入项目声明文件"""

    def _make(
        packages: dict[str, dict[str, Any]],
        dependencies: dict[str, Any] | None = None,
        *,
        index: Any = None,
        **overrides: Any,
    ) -> ProjectContext:
        config = Config(**overrides).rebase(tmp_path)
        project = ProjectFile(config.project_file)
        for name, value in (dependencies or {}).items():
            project._put(name, value)
        return ProjectContext(
            config, index=index if index is not None else make_index(packages), project=project,
        )

    return _make
