"""构建后端

后端种类是封闭集合（BackendKind），每种对应一个实现，统一契约::

    execute(package, work_dir) -> BuildResult

work_dir 布局由编排器准备:
    <work_dir>/src/      解包后的源码
    <work_dir>/prefix/   后端把安装结果写到这里，编排器再原子地装进安装树

后端只负责把 src 变成 prefix，不触碰安装树。
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from rockforge.core.exceptions import ExecutionError, ValidationError
from rockforge.core.models import BackendKind, BuildResult, BuildSpec, ResolvedPackage
from rockforge.utils.shell import CommandExecutor, run_cmd

if TYPE_CHECKING:
    from rockforge.core.tree import InstallTree

logger = logging.getLogger(__name__)

SRC_DIR = "src"
PREFIX_DIR = "prefix"


class BuildBackend(Protocol):
    """构建后端协议"""

    def execute(self, package: ResolvedPackage, work_dir: Path) -> BuildResult:
        ...


@dataclass
class BackendEnv:
    """各后端共享的运行环境"""

    tree: InstallTree
    executor: CommandExecutor
    timeout: int | None = None
    legacy_tool: str = "luarocks"


def _spec_of(package: ResolvedPackage) -> BuildSpec:
    if package.build_spec is None:
        raise ValidationError(f"{package.id} 缺少构建规格")
    return package.build_spec


def _collect_bin(prefix: Path) -> list[str]:
    bin_dir = prefix / "bin"
    if not bin_dir.is_dir():
        return []
    return sorted(p.name for p in bin_dir.iterdir() if p.is_file())


class BuiltinBackend:
    """规则式安装：按模块表把源文件复制到 prefix/lib，入口复制到 prefix/bin"""

    kind = BackendKind.BUILTIN

    def __init__(self, env: BackendEnv) -> None:
        self.env = env

    def execute(self, package: ResolvedPackage, work_dir: Path) -> BuildResult:
        start = time.monotonic()
        spec = _spec_of(package)
        src, prefix = work_dir / SRC_DIR, work_dir / PREFIX_DIR
        prefix.mkdir(parents=True, exist_ok=True)

        missing = [f for f in list(spec.modules.values()) + list(spec.entrypoints.values())
                   if not (src / f).is_file()]
        if missing:
            return BuildResult(
                status="failed", message=f"源文件不存在: {', '.join(sorted(missing))}",
                duration=time.monotonic() - start,
            )

        for module, rel in sorted(spec.modules.items()):
            suffix = Path(rel).suffix
            target = prefix / "lib" / Path(*module.split(".")).with_suffix(suffix)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src / rel, target)

        for name, rel in sorted(spec.entrypoints.items()):
            target = prefix / "bin" / name
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src / rel, target)
            target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        return BuildResult(
            status="success", prefix=prefix, entrypoints=sorted(spec.entrypoints),
            duration=time.monotonic() - start,
        )


class _ExternalBackend:
    """调用外部进程的后端公共部分"""

    kind: BackendKind

    def __init__(self, env: BackendEnv) -> None:
        self.env = env

    def build_env(self, package: ResolvedPackage, work_dir: Path) -> dict[str, str]:
        """外部命令的环境变量：PREFIX、依赖安装路径与包自带变量"""
        deps = []
        for dep in package.dependencies + package.build_dependencies:
            entry = self.env.tree.get(dep)
            if entry is not None:
                deps.append(entry.path)
        spec = _spec_of(package)
        return {
            **os.environ,
            **spec.variables,
            "PREFIX": str(work_dir / PREFIX_DIR),
            "ROCKFORGE_TREE": str(self.env.tree.root),
            "ROCKFORGE_DEPS": os.pathsep.join(deps),
            "ROCKFORGE_PACKAGE": package.name,
            "ROCKFORGE_VERSION": str(package.version),
        }

    def commands(self, package: ResolvedPackage, work_dir: Path) -> list[tuple[str, str | list[str]]]:
        raise NotImplementedError

    def execute(self, package: ResolvedPackage, work_dir: Path) -> BuildResult:
        start = time.monotonic()
        src, prefix = work_dir / SRC_DIR, work_dir / PREFIX_DIR
        prefix.mkdir(parents=True, exist_ok=True)
        env = self.build_env(package, work_dir)
        try:
            for label, cmd in self.commands(package, work_dir):
                run_cmd(
                    cmd, cwd=str(src), env=env, label=f"{package.id} {label}",
                    executor=self.env.executor, timeout=self.env.timeout,
                )
        except ExecutionError as e:
            logger.error("构建失败 %s [%s]: %s", package.id, self.kind.value, e)
            return BuildResult(
                status="failed", message=str(e), duration=time.monotonic() - start,
            )
        return BuildResult(
            status="success", prefix=prefix, entrypoints=_collect_bin(prefix),
            duration=time.monotonic() - start,
        )


class CommandBackend(_ExternalBackend):
    """外部命令/脚本：build_command 后接 install_command"""

    kind = BackendKind.COMMAND

    def commands(self, package: ResolvedPackage, work_dir: Path) -> list[tuple[str, str | list[str]]]:
        spec = _spec_of(package)
        if not spec.build_command and not spec.install_command:
            raise ValidationError(f"{package.id} 的 command 后端未定义任何命令")
        cmds: list[tuple[str, str | list[str]]] = []
        if spec.build_command:
            cmds.append(("build", spec.build_command))
        if spec.install_command:
            cmds.append(("install", spec.install_command))
        return cmds


class DelegateBackend(_ExternalBackend):
    """委托第三方构建工具：<tool> [args]，再 <tool> install [args] PREFIX=<prefix>"""

    kind = BackendKind.DELEGATE

    def commands(self, package: ResolvedPackage, work_dir: Path) -> list[tuple[str, str | list[str]]]:
        spec = _spec_of(package)
        if not spec.tool:
            raise ValidationError(f"{package.id} 的 delegate 后端未指定 tool")
        args = list(spec.tool_args)
        prefix = f"PREFIX={work_dir / PREFIX_DIR}"
        return [
            ("build", [spec.tool, *args]),
            ("install", [spec.tool, "install", *args, prefix]),
        ]


class LegacyBackend(_ExternalBackend):
    """旧工具兼容层：把构建交给旧包管理器，安装到 prefix"""

    kind = BackendKind.LEGACY

    def commands(self, package: ResolvedPackage, work_dir: Path) -> list[tuple[str, str | list[str]]]:
        tool = self.env.legacy_tool
        return [("legacy", [tool, "make", "--tree", str(work_dir / PREFIX_DIR)])]


BACKEND_TYPES: dict[BackendKind, type] = {
    BackendKind.BUILTIN: BuiltinBackend,
    BackendKind.COMMAND: CommandBackend,
    BackendKind.DELEGATE: DelegateBackend,
    BackendKind.LEGACY: LegacyBackend,
}


def make_backends(env: BackendEnv) -> dict[BackendKind, BuildBackend]:
    """为每个 BackendKind 实例化一个后端，缺项直接报错"""
    missing = set(BackendKind) - set(BACKEND_TYPES)
    if missing:
        raise ValidationError(f"构建后端未实现: {sorted(k.value for k in missing)}")
    return {kind: cls(env) for kind, cls in BACKEND_TYPES.items()}

