"""项目声明

ProjectSpecLoader 是核心消费的唯一接口：direct_deps() 返回根依赖声明。
ProjectFile 是基于 YAML 的默认实现，同时承担 add / remove / pin / unpin 编辑。

文件格式::

    name: my-app
    dependencies:
      lua-cjson: ">=2.1"
      penlight:
        version: "~> 1.13"
        pin: true
      busted:
        version: "*"
        dev: true
"""

from __future__ import annotations

import logging
from typing import Protocol

from rockforge.core.exceptions import PackageNotFoundError, ValidationError
from rockforge.core.models import PackageSpec
from rockforge.core.registry import YamlRegistry
from rockforge.core.version import ANY, VersionReq

logger = logging.getLogger(__name__)


class ProjectSpecLoader(Protocol):
    """根依赖声明来源"""

    def direct_deps(self) -> list[PackageSpec]:
        ...


class StaticProject:
    """内存中的根声明（测试与一次性安装）"""

    def __init__(self, specs: list[PackageSpec] | None = None) -> None:
        self._specs = list(specs or [])

    def direct_deps(self) -> list[PackageSpec]:
        return list(self._specs)


class ProjectFile(YamlRegistry):
    """项目声明文件"""

    section_key = "dependencies"

    @property
    def name(self) -> str:
        return str(self._data.get("name", self.registry_file.parent.name))

    def direct_deps(self) -> list[PackageSpec]:
        specs = [PackageSpec.from_value(str(name), value) for name, value in self._items_raw()]
        return sorted(specs, key=lambda s: s.name)

    def get(self, name: str) -> PackageSpec | None:
        value = self._get_raw(name)
        if value is None and name not in self._section():
            return None
        return PackageSpec.from_value(name, value)

    def _require(self, name: str) -> PackageSpec:
        spec = self.get(name)
        if spec is None:
            raise PackageNotFoundError(name, f"未在 {self.registry_file} 中声明")
        return spec

    # ---- 编辑 ----

    def add(
        self, name: str, req: VersionReq = ANY, *,
        optional: bool = False, pinned: bool = False, dev: bool = False,
    ) -> PackageSpec:
        """新增或覆盖一条依赖声明"""
        if not name:
            raise ValidationError("依赖名不能为空")
        spec = PackageSpec(name=name, req=req, optional=optional, pinned=pinned, dev=dev)
        self._put(name, spec.to_value())
        logger.info("已声明依赖: %s", spec)
        return spec

    def remove(self, name: str) -> bool:
        removed = self._remove(name)
        if removed:
            logger.info("已移除依赖声明: %s", name)
        return removed

    def set_pinned(self, name: str, pinned: bool) -> PackageSpec:
        spec = self._require(name)
        updated = PackageSpec(
            name=spec.name, req=spec.req, optional=spec.optional,
            pinned=pinned, dev=spec.dev, source=spec.source,
        )
        self._put(name, updated.to_value())
        return updated
