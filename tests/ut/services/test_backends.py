"""构建后端单元测试"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from rockforge.core.exceptions import ValidationError
from rockforge.core.models import BackendKind, BuildSpec, ResolvedPackage, parse_package_id
from rockforge.core.tree import InstallTree
from rockforge.services.build import backends
from rockforge.services.build.backends import (
    BACKEND_TYPES,
    BackendEnv,
    BuiltinBackend,
    CommandBackend,
    DelegateBackend,
    LegacyBackend,
    make_backends,
)
from rockforge.utils.shell import CommandResult


class FakeExecutor:
    """记录调用的执行器，可在命令执行时往 prefix 写文件"""

    def __init__(self, returncode: int = 0, produce_bin: str = "") -> None:
        self.returncode = returncode
        self.produce_bin = produce_bin
        self.calls: list[tuple[str | list[str], str, dict[str, str]]] = []

    def execute(self, cmd, *, cwd=".", env=None, timeout=None) -> CommandResult:
        self.calls.append((cmd, cwd, env or {}))
        if self.produce_bin and env:
            bin_dir = Path(env["PREFIX"]) / "bin"
            bin_dir.mkdir(parents=True, exist_ok=True)
            (bin_dir / self.produce_bin).write_text("#!/bin/sh\n", encoding="utf-8")
        stderr = "boom" if self.returncode else ""
        return CommandResult(returncode=self.returncode, stdout="", stderr=stderr)


def package(spec: BuildSpec, deps: tuple[str, ...] = ()) -> ResolvedPackage:
    return ResolvedPackage(
        id=parse_package_id("demo@1.0"), build_spec=spec,
        dependencies=[parse_package_id(d) for d in deps],
    )


@pytest.fixture()
def work_dir(tmp_path: Path) -> Path:
    src = tmp_path / "work" / "src"
    (src / "lua" / "demo").mkdir(parents=True)
    (src / "lua" / "demo" / "util.lua").write_text("return {}\n", encoding="utf-8")
    (src / "bin").mkdir()
    (src / "bin" / "demo.lua").write_text("print('demo')\n", encoding="utf-8")
    return tmp_path / "work"


def env_with(tmp_path: Path, executor=None) -> BackendEnv:
    return BackendEnv(tree=InstallTree(tmp_path / "tree"), executor=executor or FakeExecutor())


class TestRegistry:
    def test_every_kind_has_backend(self, tmp_path: Path) -> None:
        assert set(BACKEND_TYPES) == set(BackendKind)
        made = make_backends(env_with(tmp_path))
        assert isinstance(made[BackendKind.LEGACY], LegacyBackend)

    def test_missing_kind_rejected(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.delitem(backends.BACKEND_TYPES, BackendKind.DELEGATE)
        with pytest.raises(ValidationError, match="delegate"):
            make_backends(env_with(tmp_path))


class TestBuiltin:
    def test_copies_modules_and_bin(self, tmp_path: Path, work_dir: Path) -> None:
        spec = BuildSpec(
            modules={"demo.util": "lua/demo/util.lua"},
            entrypoints={"demo": "bin/demo.lua"},
        )
        result = BuiltinBackend(env_with(tmp_path)).execute(package(spec), work_dir)
        assert result.success
        assert (result.prefix / "lib" / "demo" / "util.lua").is_file()
        entry = result.prefix / "bin" / "demo"
        assert os.access(entry, os.X_OK)
        assert result.entrypoints == ["demo"]

    def test_missing_source_file(self, tmp_path: Path, work_dir: Path) -> None:
        spec = BuildSpec(modules={"demo.gone": "lua/demo/gone.lua"})
        result = BuiltinBackend(env_with(tmp_path)).execute(package(spec), work_dir)
        assert not result.success
        assert "lua/demo/gone.lua" in result.message

    def test_requires_build_spec(self, tmp_path: Path, work_dir: Path) -> None:
        node = ResolvedPackage(id=parse_package_id("demo@1.0"))
        with pytest.raises(ValidationError):
            BuiltinBackend(env_with(tmp_path)).execute(node, work_dir)


class TestExternal:
    def test_command_runs_build_then_install(self, tmp_path: Path, work_dir: Path) -> None:
        executor = FakeExecutor(produce_bin="demo")
        spec = BuildSpec(
            kind=BackendKind.COMMAND, build_command="make", install_command="make install",
            variables={"LUA_VERSION": "5.4"},
        )
        result = CommandBackend(env_with(tmp_path, executor)).execute(package(spec), work_dir)
        assert result.success
        assert [c[0] for c in executor.calls] == ["make", "make install"]
        cmd, cwd, env = executor.calls[0]
        assert cwd == str(work_dir / "src")
        assert env["PREFIX"] == str(work_dir / "prefix")
        assert env["LUA_VERSION"] == "5.4"
        assert env["ROCKFORGE_PACKAGE"] == "demo"
        assert result.entrypoints == ["demo"]

    def test_dependency_paths_exported(self, tmp_path: Path, work_dir: Path) -> None:
        env = env_with(tmp_path)
        prefix = tmp_path / "dep-prefix"
        prefix.mkdir()
        installed = env.tree.install(ResolvedPackage(id=parse_package_id("base@1.0")), prefix)
        spec = BuildSpec(kind=BackendKind.COMMAND, build_command="make")
        CommandBackend(env).execute(package(spec, ("base@1.0",)), work_dir)
        assert env.executor.calls[0][2]["ROCKFORGE_DEPS"] == installed.path

    def test_command_failure_is_result(self, tmp_path: Path, work_dir: Path) -> None:
        spec = BuildSpec(kind=BackendKind.COMMAND, build_command="make")
        result = CommandBackend(env_with(tmp_path, FakeExecutor(returncode=2))).execute(
            package(spec), work_dir,
        )
        assert not result.success
        assert "rc=2" in result.message and "boom" in result.message

    def test_command_without_commands(self, tmp_path: Path, work_dir: Path) -> None:
        spec = BuildSpec(kind=BackendKind.COMMAND)
        with pytest.raises(ValidationError):
            CommandBackend(env_with(tmp_path)).execute(package(spec), work_dir)

    def test_delegate(self, tmp_path: Path, work_dir: Path) -> None:
        executor = FakeExecutor()
        spec = BuildSpec(kind=BackendKind.DELEGATE, tool="make", tool_args=("LUA=lua5.4",))
        DelegateBackend(env_with(tmp_path, executor)).execute(package(spec), work_dir)
        assert [c[0] for c in executor.calls] == [
            ["make", "LUA=lua5.4"],
            ["make", "install", "LUA=lua5.4", f"PREFIX={work_dir / 'prefix'}"],
        ]

    def test_legacy_uses_configured_tool(self, tmp_path: Path, work_dir: Path) -> None:
        executor = FakeExecutor()
        env = BackendEnv(tree=InstallTree(tmp_path / "tree"), executor=executor, legacy_tool="oldrocks")
        LegacyBackend(env).execute(package(BuildSpec(kind=BackendKind.LEGACY)), work_dir)
        assert executor.calls[0][0] == ["oldrocks", "make", "--tree", str(work_dir / "prefix")]
