"""核心数据模型

所有领域实体集中定义：包身份、依赖声明、构建规格、解析结果、
锁文件条目、安装树条目以及各类报告。
包身份 = (name, version)，同名不同版本是不同的节点。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from rockforge.core.exceptions import ValidationError, VersionParseError
from rockforge.core.version import ANY, Version, VersionReq, parse, parse_requirement

# =========================================================================
# 身份与声明
# =========================================================================


@dataclass(frozen=True)
class PackageId:
    """包身份：名称 + 版本"""

    name: str
    version: Version

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"

    def sort_key(self) -> tuple:
        return (self.name, self.version.sort_key())

    def __lt__(self, other: PackageId) -> bool:
        return self.sort_key() < other.sort_key()


def parse_package_id(text: str) -> PackageId:
    """解析 'name@version'"""
    name, sep, ver = text.strip().rpartition("@")
    if not sep or not name:
        raise VersionParseError(text, "包身份应为 name@version")
    return PackageId(name=name, version=parse(ver))


@dataclass(frozen=True)
class PackageSpec:
    """一条依赖声明"""

    name: str
    req: VersionReq = ANY
    optional: bool = False
    pinned: bool = False
    dev: bool = False
    source: str | None = None  # 覆盖索引中的源码位置

    def __str__(self) -> str:
        return self.name if self.req.is_any else f"{self.name} {self.req}"

    @classmethod
    def from_value(cls, name: str, value: Any) -> PackageSpec:
        """从声明值构建：字符串为约束，映射可带 version/opt/pin/dev/source"""
        if value is None or isinstance(value, (str, int, float)):
            return cls(name=name, req=parse_requirement(None if value is None else str(value)))
        if not isinstance(value, dict):
            raise ValidationError(f"依赖 {name} 的声明格式无效: {value!r}")
        return cls(
            name=name,
            req=parse_requirement(value.get("version")),
            optional=bool(value.get("opt", value.get("optional", False))),
            pinned=bool(value.get("pin", value.get("pinned", False))),
            dev=bool(value.get("dev", False)),
            source=value.get("source"),
        )

    def to_value(self) -> str | dict[str, Any]:
        if not (self.optional or self.pinned or self.dev or self.source):
            return str(self.req)
        out: dict[str, Any] = {"version": str(self.req)}
        if self.optional:
            out["opt"] = True
        if self.pinned:
            out["pin"] = True
        if self.dev:
            out["dev"] = True
        if self.source:
            out["source"] = self.source
        return out


# =========================================================================
# 构建规格 - 封闭的后端变体
# =========================================================================


class BackendKind(str, Enum):
    """构建后端种类（封闭集合）"""

    BUILTIN = "builtin"    # 规则式安装：按模块表复制文件
    COMMAND = "command"    # 外部命令/脚本
    DELEGATE = "delegate"  # 委托第三方构建工具（make、cmake 等）
    LEGACY = "legacy"      # 旧工具兼容层


@dataclass(frozen=True)
class BuildSpec:
    """包的构建规格，kind 决定使用哪些字段"""

    kind: BackendKind = BackendKind.BUILTIN
    modules: dict[str, str] = field(default_factory=dict)      # builtin: 模块名 -> 源文件
    entrypoints: dict[str, str] = field(default_factory=dict)  # 可执行入口: 名称 -> 源文件
    build_command: str = ""                                    # command
    install_command: str = ""                                  # command
    tool: str = ""                                             # delegate: 工具名
    tool_args: tuple[str, ...] = ()                            # delegate: 额外参数
    variables: dict[str, str] = field(default_factory=dict)    # 传给外部命令的环境变量

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> BuildSpec:
        data = data or {}
        raw_kind = data.get("type", data.get("kind", BackendKind.BUILTIN.value))
        try:
            kind = BackendKind(raw_kind)
        except ValueError:
            raise ValidationError(
                f"未知的构建后端 '{raw_kind}'，可选: {[k.value for k in BackendKind]}"
            ) from None
        return cls(
            kind=kind,
            modules=dict(data.get("modules") or {}),
            entrypoints=dict(data.get("install", {}).get("bin") or data.get("bin") or {}),
            build_command=data.get("build_command", ""),
            install_command=data.get("install_command", ""),
            tool=data.get("tool", ""),
            tool_args=tuple(data.get("tool_args") or ()),
            variables={str(k): str(v) for k, v in (data.get("variables") or {}).items()},
        )


# =========================================================================
# 清单索引条目与解析结果
# =========================================================================


@dataclass
class ManifestEntry:
    """清单索引中某个包的一个可用版本"""

    name: str
    version: Version
    dependencies: list[PackageSpec] = field(default_factory=list)
    build_dependencies: list[PackageSpec] = field(default_factory=list)
    build_spec: BuildSpec = field(default_factory=BuildSpec)
    source: str = ""          # 源码定位符：本地路径或 http(s) URL
    integrity: str | None = None

    @property
    def id(self) -> PackageId:
        return PackageId(self.name, self.version)


@dataclass
class ResolvedPackage:
    """解析图中的一个节点"""

    id: PackageId
    source: str = ""
    integrity: str | None = None
    dependencies: list[PackageId] = field(default_factory=list)
    build_dependencies: list[PackageId] = field(default_factory=list)
    optional_dependencies: list[PackageId] = field(default_factory=list)  # dependencies 中经 opt 声明引入的边
    optional: bool = False
    pinned: bool = False
    constraint: str = "*"
    build_spec: BuildSpec | None = None  # 从锁文件复用时为 None，构建前按需查询索引
    from_lock: bool = False

    @property
    def name(self) -> str:
        return self.id.name

    @property
    def version(self) -> Version:
        return self.id.version


# =========================================================================
# 锁文件条目
# =========================================================================


@dataclass
class LockEntry:
    """锁文件中持久化的一个包"""

    id: PackageId
    source: str = ""
    integrity: str = ""
    dependencies: list[PackageId] = field(default_factory=list)
    build_dependencies: list[PackageId] = field(default_factory=list)
    pinned: bool = False
    optional: bool = False
    constraint: str = "*"

    @property
    def key(self) -> str:
        return str(self.id)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": str(self.id.version),
            "source": {"locator": self.source, "integrity": self.integrity},
            "dependencies": [str(d) for d in sorted(self.dependencies)],
            "pinned": self.pinned,
        }
        if self.build_dependencies:
            out["build_dependencies"] = [str(d) for d in sorted(self.build_dependencies)]
        if self.optional:
            out["optional"] = True
        if self.constraint and self.constraint != "*":
            out["constraint"] = self.constraint
        return out

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> LockEntry:
        pid = parse_package_id(key)
        source = data.get("source") or {}
        return cls(
            id=pid,
            source=source.get("locator", ""),
            integrity=source.get("integrity", ""),
            dependencies=[parse_package_id(d) for d in data.get("dependencies") or []],
            build_dependencies=[parse_package_id(d) for d in data.get("build_dependencies") or []],
            pinned=bool(data.get("pinned", False)),
            optional=bool(data.get("optional", False)),
            constraint=str(data.get("constraint", "*")),
        )

    @classmethod
    def from_resolved(cls, pkg: ResolvedPackage, integrity: str) -> LockEntry:
        return cls(
            id=pkg.id,
            source=pkg.source,
            integrity=integrity,
            dependencies=sorted(pkg.dependencies),
            build_dependencies=sorted(pkg.build_dependencies),
            pinned=pkg.pinned,
            optional=pkg.optional,
            constraint=pkg.constraint,
        )


# =========================================================================
# 安装树条目
# =========================================================================


@dataclass
class InstallTreeEntry:
    """安装树中的一个已安装包"""

    id: PackageId
    path: str
    artifact_hash: str = ""
    artifact_path: str = ""
    entrypoints: list[str] = field(default_factory=list)
    dependencies: list[PackageId] = field(default_factory=list)
    optional_dependencies: list[PackageId] = field(default_factory=list)
    root: bool = False      # 用户显式请求的入口包
    project: bool = False   # 当前项目声明的根，由 sync 维护
    pinned: bool = False

    @property
    def anchored(self) -> bool:
        """入口包或项目根；修剪时从这些条目出发计算可达性"""
        return self.root or self.project

    def hard_dependencies(self) -> list[PackageId]:
        optional = set(self.optional_dependencies)
        return [d for d in self.dependencies if d not in optional]

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "artifact_hash": self.artifact_hash,
            "artifact_path": self.artifact_path,
            "entrypoints": sorted(self.entrypoints),
            "dependencies": [str(d) for d in sorted(self.dependencies)],
            "optional_dependencies": [str(d) for d in sorted(self.optional_dependencies)],
            "root": self.root,
            "project": self.project,
            "pinned": self.pinned,
        }

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> InstallTreeEntry:
        return cls(
            id=parse_package_id(key),
            path=data.get("path", ""),
            artifact_hash=data.get("artifact_hash", ""),
            artifact_path=data.get("artifact_path", ""),
            entrypoints=list(data.get("entrypoints") or []),
            dependencies=[parse_package_id(d) for d in data.get("dependencies") or []],
            optional_dependencies=[
                parse_package_id(d) for d in data.get("optional_dependencies") or []
            ],
            root=bool(data.get("root", False)),
            project=bool(data.get("project", False)),
            pinned=bool(data.get("pinned", False)),
        )


# =========================================================================
# 构建结果与报告
# =========================================================================


@dataclass
class BuildResult:
    """构建后端的执行结果"""

    status: str  # "success" / "failed"
    prefix: Path | None = None
    entrypoints: list[str] = field(default_factory=list)
    message: str = ""
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == "success"


@dataclass
class PackageReport:
    """单个包在一次操作中的结果"""

    name: str
    version: str
    status: str  # resolved / built / cached / unchanged / removed / failed / skipped / cancelled
    backend: str = ""
    message: str = ""
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "skipped", "cancelled")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name, "version": self.version, "status": self.status,
            "backend": self.backend, "message": self.message,
            "duration": round(self.duration, 3),
        }


@dataclass
class SyncDiff:
    """锁文件调和差异"""

    added: list[PackageId] = field(default_factory=list)
    removed: list[PackageId] = field(default_factory=list)
    updated: list[tuple[PackageId, PackageId]] = field(default_factory=list)  # (旧, 新)
    unchanged: list[PackageId] = field(default_factory=list)
    stale: list[PackageId] = field(default_factory=list)  # 锁未变，但产物缺失或损坏需重建
    corrupt: list[PackageId] = field(default_factory=list)  # 产物哈希与锁记录不符（同时计入 stale）

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated or self.stale)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": [str(p) for p in self.added],
            "removed": [str(p) for p in self.removed],
            "updated": [f"{old} -> {new.version}" for old, new in self.updated],
            "unchanged": [str(p) for p in self.unchanged],
            "stale": [str(p) for p in self.stale],
            "corrupt": [str(p) for p in self.corrupt],
        }


@dataclass
class OperationReport:
    """上层操作（resolve/sync/build/install/uninstall）的结构化结果"""

    operation: str
    packages: list[PackageReport] = field(default_factory=list)
    diff: SyncDiff | None = None
    error: str = ""

    @property
    def success(self) -> bool:
        return not self.error and not any(p.failed for p in self.packages)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "operation": self.operation,
            "success": self.success,
            "packages": [p.to_dict() for p in self.packages],
        }
        if self.diff is not None:
            out["diff"] = self.diff.to_dict()
        if self.error:
            out["error"] = self.error
        return out
