"""上层操作 - CLI 调用的统一入口

数据流:
  根声明 + 清单索引 -> 解析 -> 依赖图 -> 锁调和（旧锁 + 安装树）
  -> 构建计划 -> 并行构建 -> 安装树变更 -> 写锁

约束:
  - 整个操作持有安装树的咨询锁
  - 锁文件在开始时读一次，全部成功后原子地写一次；任何失败都不改写锁
  - 解析错误在任何构建开始前中止整个操作
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from rockforge.core.exceptions import ValidationError
from rockforge.core.graph import DependencyGraph
from rockforge.core.lockfile import Lockfile, sync
from rockforge.core.models import (
    InstallTreeEntry,
    OperationReport,
    PackageId,
    PackageReport,
    PackageSpec,
    SyncDiff,
)
from rockforge.core.project import ProjectFile
from rockforge.core.resolver import DependencyResolver
from rockforge.core.version import parse_package_req, parse_requirement
from rockforge.services.build.orchestrator import BuildOrchestrator
from rockforge.services.context import ProjectContext

logger = logging.getLogger(__name__)


def _report(pid: PackageId, status: str, message: str = "") -> PackageReport:
    return PackageReport(name=pid.name, version=str(pid.version), status=status, message=message)


class PackageManager:
    """包管理操作集合"""

    def __init__(self, ctx: ProjectContext) -> None:
        self.ctx = ctx

    # ---- 协作者 ----

    def _resolver(self) -> DependencyResolver:
        cfg = self.ctx.config
        return DependencyResolver(
            self.ctx.index, singletons=cfg.singleton_tools, fetch_workers=cfg.fetch_workers,
        )

    def _orchestrator(
        self, *, force: bool = False, fail_fast: bool | None = None, project_roots: bool = False,
    ) -> BuildOrchestrator:
        """fail_fast 为 None 时沿用配置"""
        cfg = self.ctx.config
        return BuildOrchestrator(
            self.ctx.index, self.ctx.tree,
            max_workers=cfg.max_workers,
            fail_fast=cfg.fail_fast if fail_fast is None else fail_fast,
            force=force, timeout=cfg.process_timeout, legacy_tool=cfg.legacy_tool,
            project_roots=project_roots,
        )

    def _roots(self, name: str | None, constraint: str | None) -> list[PackageSpec]:
        if name:
            return [PackageSpec(name=name, req=parse_requirement(constraint))]
        return self.ctx.project.direct_deps()

    def _project_file(self) -> ProjectFile:
        project = self.ctx.project
        if not isinstance(project, ProjectFile):
            raise ValidationError("当前项目声明不可编辑")
        return project

    # ---- resolve ----

    def resolve(
        self, name: str | None = None, constraint: str | None = None, *,
        include_optional: bool = False, include_dev: bool = False,
        unlock: Iterable[str] = (),
    ) -> tuple[OperationReport, DependencyGraph]:
        """只解析不构建，不产生任何副作用"""
        prior = Lockfile.load(self.ctx.lockfile_path)
        graph = self._resolver().resolve(
            self._roots(name, constraint), prior,
            include_optional=include_optional, include_dev=include_dev, unlock=unlock,
        )
        report = OperationReport(operation="resolve")
        for pid in graph.topological_order():
            node = graph[pid]
            origin = "lock" if node.from_lock else "index"
            report.packages.append(_report(pid, "resolved", f"{origin} ({node.constraint})"))
        return report, graph

    # ---- sync / build / update ----

    def sync(
        self, *,
        include_optional: bool = False, include_dev: bool = False,
        unlock: Iterable[str] = (), force: Iterable[str] | bool = (),
        strict: bool = False,
        fail_fast: bool | None = None,
    ) -> OperationReport:
        """按项目声明调和锁文件与安装树

        Args:
            unlock: 忽略锁定版本的名称（repin / update）
            force: True 重建全部节点，或指定需要强制重建的名称
            strict: 锁条目未安装或产物损坏时直接报错而非重建
            fail_fast: 首个构建失败即取消其余构建；None 时沿用配置
        """
        unlocked = set(unlock)
        report = OperationReport(operation="sync")
        tree = self.ctx.tree
        with tree.locked():
            prior = Lockfile.load(self.ctx.lockfile_path)
            graph = self._resolver().resolve(
                self.ctx.project.direct_deps(), prior,
                include_optional=include_optional, include_dev=include_dev, unlock=unlocked,
            )
            new_lock, diff = sync(graph, prior, tree, unlock=unlocked, strict=strict)
            report.diff = diff

            plan_ids = self._plan_ids(graph, diff, force)
            orchestrator = self._orchestrator(
                force=bool(force), fail_fast=fail_fast, project_roots=True,
            )
            report.packages.extend(orchestrator.execute(graph.restrict(plan_ids)))
            if not report.success:
                report.error = "部分包构建失败，锁文件未更新"
                return report

            for pid, integrity in orchestrator.integrity.items():
                new_lock.set_integrity(pid, integrity)
            self._sync_tree(graph)
            stale = diff.removed + [old for old, _ in diff.updated]
            for pid in tree.remove_unreferenced(stale):
                report.packages.append(_report(pid, "removed"))
            for problem in tree.verify():
                logger.warning("安装树不一致: %s", problem)
            for pid in diff.unchanged:
                if pid not in plan_ids:
                    report.packages.append(_report(pid, "unchanged"))
            new_lock.save(self.ctx.lockfile_path)
        return report

    @staticmethod
    def _plan_ids(
        graph: DependencyGraph, diff: SyncDiff, force: Iterable[str] | bool,
    ) -> set[PackageId]:
        ids = set(diff.added) | {new for _, new in diff.updated} | set(diff.stale)
        if force is True:
            return set(graph.ids())
        if force:
            names = set(force)  # type: ignore[arg-type]
            ids |= {pid for pid in graph.ids() if pid.name in names}
        return ids

    def _sync_tree(self, graph: DependencyGraph) -> None:
        """让树条目的项目根标记、复用条目的依赖边与新图保持一致

        用户通过 install 显式安装的入口标记（root）不受影响。
        """
        roots = set(graph.roots)
        tree = self.ctx.tree
        for entry in tree.list():
            wanted = entry.id in roots
            if entry.project != wanted:
                tree.set_project(entry.id, wanted)
            node = graph.get(entry.id)
            if node is None:
                continue
            if (sorted(entry.dependencies), sorted(entry.optional_dependencies)) != (
                sorted(node.dependencies), sorted(node.optional_dependencies)
            ):
                tree.set_dependencies(entry.id, node.dependencies, node.optional_dependencies)

    def build(
        self, name: str | None = None, *, force: bool = True, fail_fast: bool | None = None,
    ) -> OperationReport:
        """构建项目依赖；指定 name 时只强制重建该名称"""
        if name is not None and not any(s.name == name for s in self.ctx.project.direct_deps()):
            locked = Lockfile.load(self.ctx.lockfile_path).by_name(name)
            if not locked:
                raise ValidationError(f"{name} 不在项目依赖中")
        target: Iterable[str] | bool = [name] if name else force
        report = self.sync(force=target, fail_fast=fail_fast)
        report.operation = "build"
        return report

    def update(self, names: Iterable[str] = ()) -> OperationReport:
        """忽略锁定版本重新解析；未指定名称时更新全部项目依赖"""
        explicit = list(names)
        chosen = explicit or [s.name for s in self.ctx.project.direct_deps()]
        lock = Lockfile.load(self.ctx.lockfile_path)
        pinned = sorted({e.id.name for e in lock if e.pinned and e.id.name in chosen})
        if pinned and not explicit:
            logger.info("保持锁定: %s", ", ".join(pinned))
            chosen = [n for n in chosen if n not in pinned]
        report = self.sync(unlock=chosen)
        report.operation = "update"
        return report

    # ---- install / uninstall ----

    def install(
        self, requirements: Iterable[str], *, force: bool = False,
        include_optional: bool = False, fail_fast: bool | None = None,
    ) -> OperationReport:
        """把包作为入口安装进树（不改项目声明与锁文件）"""
        specs = []
        for text in requirements:
            name, req = parse_package_req(text)
            specs.append(PackageSpec(name=name, req=req))
        if not specs:
            raise ValidationError("未指定要安装的包")
        names = [s.name for s in specs]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValidationError(f"重复的入口包: {', '.join(dupes)}")

        report = OperationReport(operation="install")
        tree = self.ctx.tree
        with tree.locked():
            prior = Lockfile.load(self.ctx.lockfile_path)
            graph = self._resolver().resolve(specs, prior, include_optional=include_optional)
            plan_ids = {
                pid for pid in graph.ids()
                if force or tree.get(pid) is None
                or (graph[pid].integrity and tree.artifact_integrity(pid) != graph[pid].integrity)
            }
            orchestrator = self._orchestrator(force=force, fail_fast=fail_fast)
            report.packages.extend(orchestrator.execute(graph.restrict(plan_ids)))
            for pid in graph.roots:
                if pid not in plan_ids and tree.get(pid) is not None:
                    tree.set_root(pid, True)
                    report.packages.append(_report(pid, "unchanged", "已安装"))
        return report

    def uninstall(
        self, name: str, version: str | None = None, *, cascade: bool = False,
    ) -> OperationReport:
        """卸载；被依赖时需 cascade"""
        report = OperationReport(operation="uninstall")
        for pid in self.ctx.tree.uninstall(name, version, cascade=cascade):
            report.packages.append(_report(pid, "removed"))
        return report

    # ---- pin / unpin ----

    def pin(self, name: str) -> OperationReport:
        return self._set_pinned(name, True)

    def unpin(self, name: str) -> OperationReport:
        return self._set_pinned(name, False)

    def _set_pinned(self, name: str, pinned: bool) -> OperationReport:
        report = OperationReport(operation="pin" if pinned else "unpin")
        with self.ctx.tree.locked():
            self._project_file().set_pinned(name, pinned)
            lock = Lockfile.load(self.ctx.lockfile_path)
            if lock.set_pinned(name, pinned):
                lock.save(self.ctx.lockfile_path)
            for entry in lock.by_name(name):
                report.packages.append(_report(entry.id, "pinned" if pinned else "unpinned"))
        return report

    # ---- 项目声明编辑 ----

    def add(
        self, requirement: str, *,
        optional: bool = False, pinned: bool = False, dev: bool = False,
    ) -> PackageSpec:
        name, req = parse_package_req(requirement)
        return self._project_file().add(name, req, optional=optional, pinned=pinned, dev=dev)

    def remove(self, name: str) -> bool:
        return self._project_file().remove(name)

    # ---- 查询 ----

    def list(self) -> dict[str, list[InstallTreeEntry]]:
        grouped: dict[str, list[InstallTreeEntry]] = {}
        for entry in self.ctx.tree.list():
            grouped.setdefault(entry.id.name, []).append(entry)
        return grouped

    def query(self, name: str) -> list[InstallTreeEntry]:
        return self.ctx.tree.query(name)

    def purge(self) -> int:
        return self.ctx.tree.purge()
