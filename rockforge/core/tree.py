"""安装树

磁盘布局::

    <tree>/
      tree.yml                    索引：name@version -> 条目
      .lock                       咨询锁
      packages/<name>/<version>/  已安装前缀（lib/、bin/ ...）
      artifacts/<name>-<version>.tar.gz   安装时使用的源码归档
      .staging/                   安装暂存区

安装先完整写入暂存目录，再 os.replace 到最终位置，
并发读者不会看到装了一半的包。
同一棵树的所有写操作都在咨询锁之下串行执行。
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path

from rockforge.core.exceptions import PackageNotFoundError, TreeIntegrityError, UninstallConflict
from rockforge.core.models import InstallTreeEntry, PackageId, ResolvedPackage
from rockforge.core.registry import YamlRegistry
from rockforge.core.version import parse
from rockforge.utils.archive import pack_directory
from rockforge.utils.hashing import integrity_of_bytes, integrity_of_file
from rockforge.utils.locking import acquire_file_lock
from rockforge.utils.yaml_io import atomic_write

logger = logging.getLogger(__name__)

INDEX_FILE = "tree.yml"
LOCK_FILE = ".lock"


class InstallTree(YamlRegistry):
    """已安装包的磁盘记录"""

    section_key = "packages"

    def __init__(self, root: str | Path, *, lock_timeout: float = 30.0) -> None:
        self.root = Path(root)
        super().__init__(self.root / INDEX_FILE)
        self.lock_timeout = lock_timeout
        self._mutex = threading.RLock()
        self._hold_guard = threading.Lock()
        self._hold_depth = 0
        self._hold_stack: ExitStack | None = None

    # ---- 目录 ----

    @property
    def packages_dir(self) -> Path:
        return self.root / "packages"

    @property
    def artifacts_dir(self) -> Path:
        return self.root / "artifacts"

    @property
    def staging_dir(self) -> Path:
        return self.root / ".staging"

    def package_path(self, pid: PackageId) -> Path:
        return self.packages_dir / pid.name / str(pid.version)

    def artifact_path(self, pid: PackageId) -> Path:
        return self.artifacts_dir / f"{pid.name}-{pid.version}.tar.gz"

    # ---- 咨询锁 ----

    @contextmanager
    def locked(self) -> Iterator[None]:
        """持有整棵树的咨询锁

        同一实例内可重入（包括构建线程），最外层进入时获取文件锁并重新读盘。
        """
        with self._hold_guard:
            if self._hold_depth == 0:
                stack = ExitStack()
                stack.enter_context(acquire_file_lock(self.root / LOCK_FILE, self.lock_timeout))
                self._hold_stack = stack
                with self._mutex:
                    self.reload()
            self._hold_depth += 1
        try:
            yield
        finally:
            with self._hold_guard:
                self._hold_depth -= 1
                if self._hold_depth == 0 and self._hold_stack is not None:
                    self._hold_stack.close()
                    self._hold_stack = None

    # ---- 查询 ----

    def _entry(self, key: str, raw: dict) -> InstallTreeEntry:
        return InstallTreeEntry.from_dict(key, raw or {})

    def list(self) -> list[InstallTreeEntry]:
        with self._mutex:
            entries = [self._entry(k, v) for k, v in self._items_raw()]
        return sorted(entries, key=lambda e: e.id)

    def get(self, pid: PackageId) -> InstallTreeEntry | None:
        with self._mutex:
            raw = self._get_raw(str(pid))
        return None if raw is None else self._entry(str(pid), raw)

    def query(self, name: str) -> list[InstallTreeEntry]:
        """某名称已安装的全部版本（升序）"""
        return [e for e in self.list() if e.id.name == name]

    def artifact_integrity(self, pid: PackageId) -> str | None:
        """重新计算已安装产物的摘要；条目或产物缺失返回 None"""
        entry = self.get(pid)
        if entry is None:
            return None
        artifact = Path(entry.artifact_path) if entry.artifact_path else None
        if artifact is not None and artifact.is_file():
            return integrity_of_file(artifact)
        if Path(entry.path).is_dir() and not entry.artifact_path:
            return integrity_of_bytes(pack_directory(Path(entry.path)))
        return None

    def verify(self) -> list[str]:
        """检查索引与磁盘是否一致，返回问题列表"""
        problems = []
        entries = {e.id: e for e in self.list()}
        for pid, entry in entries.items():
            if not Path(entry.path).is_dir():
                problems.append(f"{pid}: 安装目录缺失 {entry.path}")
            for dep in entry.dependencies:
                if dep not in entries:
                    problems.append(f"{pid}: 依赖 {dep} 未安装")
        return problems

    # ---- 安装 ----

    def install(
        self,
        package: ResolvedPackage,
        artifact_path: Path,
        *,
        source_archive: bytes | None = None,
        entrypoints: Iterable[str] = (),
        root: bool = False,
        project: bool = False,
    ) -> InstallTreeEntry:
        """把构建好的前缀目录原子地安装进树并登记

        Args:
            package: 解析结果中的节点
            artifact_path: 后端产出的安装前缀目录
            source_archive: 构建所用源码归档，保存后用于后续完整性校验
            entrypoints: 安装的可执行入口名
            root: 是否为用户显式请求的入口包
            project: 是否为当前项目声明的根
        """
        if not artifact_path.is_dir():
            raise TreeIntegrityError(str(package.id), f"构建产物不存在: {artifact_path}")
        with self.locked(), self._mutex:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            staged = Path(tempfile.mkdtemp(
                dir=self.staging_dir, prefix=f"{package.name}-{package.version}-",
            ))
            try:
                shutil.copytree(artifact_path, staged, dirs_exist_ok=True)
                dest = self.package_path(package.id)
                self._replace_dir(staged, dest)
            finally:
                shutil.rmtree(staged, ignore_errors=True)

            artifact = ""
            if source_archive is not None:
                target = self.artifact_path(package.id)
                atomic_write(target, source_archive)
                artifact = str(target)

            prior = self.get(package.id)
            entry = InstallTreeEntry(
                id=package.id,
                path=str(dest),
                artifact_path=artifact,
                entrypoints=sorted(set(entrypoints)),
                dependencies=sorted(package.dependencies),
                optional_dependencies=sorted(package.optional_dependencies),
                root=root or (prior is not None and prior.root),
                project=project or (prior is not None and prior.project),
                pinned=package.pinned,
            )
            entry.artifact_hash = (
                integrity_of_bytes(source_archive) if source_archive is not None
                else integrity_of_bytes(pack_directory(dest))
            )
            self._put(str(package.id), entry.to_dict())
        logger.info("已安装: %s -> %s", package.id, dest)
        return entry

    def _replace_dir(self, staged: Path, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if dest.exists():
            trash = Path(tempfile.mkdtemp(dir=self.staging_dir, prefix="old-"))
            os.replace(dest, trash / "pkg")
            os.replace(staged, dest)
            shutil.rmtree(trash, ignore_errors=True)
        else:
            os.replace(staged, dest)

    def set_root(self, pid: PackageId, root: bool) -> None:
        self._set_flag(pid, "root", root)

    def set_project(self, pid: PackageId, project: bool) -> None:
        self._set_flag(pid, "project", project)

    def _set_flag(self, pid: PackageId, key: str, value: bool) -> None:
        with self.locked(), self._mutex:
            raw = self._get_raw(str(pid))
            if raw is None:
                raise PackageNotFoundError(str(pid), "未安装")
            raw[key] = value
            self._save()

    def set_dependencies(
        self, pid: PackageId, dependencies: Iterable[PackageId],
        optional_dependencies: Iterable[PackageId] = (),
    ) -> None:
        """依赖版本变化但自身未重建时，改写条目的依赖边"""
        with self.locked(), self._mutex:
            raw = self._get_raw(str(pid))
            if raw is None:
                raise PackageNotFoundError(str(pid), "未安装")
            raw["dependencies"] = [str(d) for d in sorted(dependencies)]
            raw["optional_dependencies"] = [str(d) for d in sorted(optional_dependencies)]
            self._save()

    # ---- 卸载 ----

    def uninstall(
        self, name: str, version: str | None = None, *, cascade: bool = False,
    ) -> list[PackageId]:
        """卸载指定包，返回按删除顺序排列的身份

        非级联：若存在其他条目对目标的非可选依赖边，抛 UninstallConflict。
        级联：先沿反向边删除依赖方，再删除目标，
        最后修剪目标的依赖中不再被任何存活根引用的条目。
        """
        with self.locked(), self._mutex:
            entries = {e.id: e for e in self.list()}
            targets = {
                pid for pid in entries
                if pid.name == name and (version is None or pid.version == parse(version))
            }
            if not targets:
                label = name if version is None else f"{name}@{version}"
                raise PackageNotFoundError(label, "安装树中不存在")

            dependents = self._hard_dependents(entries, targets)
            if dependents and not cascade:
                first = min(targets)
                raise UninstallConflict(str(first), [str(d) for d in dependents])

            doomed = set(targets) | set(dependents)
            survivors_roots = [
                pid for pid, e in entries.items() if e.anchored and pid not in doomed
            ]
            reachable = self._closure(entries, survivors_roots)
            descendants = self._closure(entries, doomed) - doomed
            pruned = {
                pid for pid in descendants
                if pid not in reachable and not entries[pid].anchored
            }

            order = dependents + sorted(targets) + sorted(pruned)
            for pid in order:
                self._delete(entries[pid])
                logger.info("已卸载: %s", pid)
            gone = set(order)
            for pid, entry in entries.items():
                if pid in gone:
                    continue
                if any(d in gone for d in entry.dependencies):
                    entry.dependencies = [d for d in entry.dependencies if d not in gone]
                    entry.optional_dependencies = [
                        d for d in entry.optional_dependencies if d not in gone
                    ]
                    self._section()[str(pid)] = entry.to_dict()
            self._save()
            if pruned:
                logger.info("修剪悬空依赖: %s", ", ".join(str(p) for p in sorted(pruned)))
            return order

    @staticmethod
    def _hard_dependents(
        entries: dict[PackageId, InstallTreeEntry], targets: set[PackageId],
    ) -> list[PackageId]:
        """沿非可选反向边逐层收集依赖方（不含 targets 自身），离目标最远的排在最前"""
        found: set[PackageId] = set()
        levels: list[list[PackageId]] = []
        frontier = set(targets)
        while frontier:
            nxt = {
                pid for pid, e in entries.items()
                if pid not in found and pid not in targets
                and any(d in frontier for d in e.hard_dependencies())
            }
            if nxt:
                levels.append(sorted(nxt))
            found |= nxt
            frontier = nxt
        ordered: list[PackageId] = []
        for level in reversed(levels):
            ordered.extend(p for p in level if p not in ordered)
        return ordered

    @staticmethod
    def _closure(
        entries: dict[PackageId, InstallTreeEntry], start: Iterable[PackageId],
    ) -> set[PackageId]:
        seen: set[PackageId] = set()
        stack = list(start)
        while stack:
            pid = stack.pop()
            if pid in seen or pid not in entries:
                continue
            seen.add(pid)
            stack.extend(entries[pid].dependencies)
        return seen

    def _delete(self, entry: InstallTreeEntry) -> None:
        path = Path(entry.path)
        if path.exists():
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            trash = Path(tempfile.mkdtemp(dir=self.staging_dir, prefix="rm-"))
            os.replace(path, trash / "pkg")
            shutil.rmtree(trash, ignore_errors=True)
        if entry.artifact_path:
            Path(entry.artifact_path).unlink(missing_ok=True)
        self._section().pop(str(entry.id), None)

    def remove_unreferenced(self, candidates: Iterable[PackageId]) -> list[PackageId]:
        """删除同步后不再需要的旧版本，返回实际删除的身份

        候选条目只要仍被存活条目以非可选边依赖、或能从存活的入口包/项目根到达，
        就保留在树中。保留一个候选可能连带保住它依赖的其他候选，因此迭代到稳定。
        """
        with self.locked(), self._mutex:
            entries = {e.id: e for e in self.list()}
            doomed = {pid for pid in candidates if pid in entries}
            kept: set[PackageId] = set()
            while True:
                survivors = [e for pid, e in entries.items() if pid not in doomed]
                held = {d for e in survivors for d in e.hard_dependencies()}
                held |= self._closure(entries, [e.id for e in survivors if e.anchored])
                rescued = {pid for pid in doomed if pid in held or entries[pid].root}
                if not rescued:
                    break
                doomed -= rescued
                kept |= rescued

            for pid in sorted(kept):
                logger.info("保留旧版本 %s: 仍被安装树中的其他包依赖", pid)
            order = sorted(doomed)
            for pid in order:
                self._delete(entries[pid])
                logger.info("已移除旧版本: %s", pid)
            if order:
                self._save()
            return order

    def purge(self) -> int:
        """清空整棵树，返回删除的条目数"""
        with self.locked(), self._mutex:
            entries = self.list()
            for entry in entries:
                self._delete(entry)
            self._section().clear()
            self._save()
            shutil.rmtree(self.staging_dir, ignore_errors=True)
        logger.info("安装树已清空: %s (%d 个条目)", self.root, len(entries))
        return len(entries)
