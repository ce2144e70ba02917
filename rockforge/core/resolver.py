"""依赖解析器

对每个根声明做深度优先展开，产出以 (name, version) 为身份的依赖图。

选版本的顺序:
  1. 旧锁中满足约束的最高版本（减少锁文件抖动）；
     若该条目的整个锁定子图都可复用，直接按锁重建，不再查询清单索引
  2. 否则取清单索引中满足约束的最高版本

策略:
  - 默认允许同名多版本并存，每个消费者可绑定不同版本
  - singleton 名称（构建期工具）在一次解析内只能有一个版本；
    冲突时汇总该名称的全部约束，取同时满足的最高版本后重新解析，
    无解抛 UnsatisfiableConstraint
  - pinned 声明保留锁定版本，除非名称在 unlock 中（repin / update）
  - opt 依赖只有请求时才解析，失败只记警告并省略
  - 同身份自引用抛 CyclicDependency，跨版本的“环”是允许的

展开过程中，节点的全部依赖名通过线程池并发预取版本列表，
DFS 本身仍按声明顺序串行执行，结果是确定的。
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

from rockforge.core.exceptions import (
    CyclicDependency,
    LockfileDrift,
    PackageNotFoundError,
    RockforgeError,
    UnsatisfiableConstraint,
)
from rockforge.core.graph import DependencyGraph
from rockforge.core.index import ManifestIndex
from rockforge.core.lockfile import Lockfile
from rockforge.core.models import (
    LockEntry,
    ManifestEntry,
    PackageId,
    PackageSpec,
    ResolvedPackage,
)
from rockforge.core.version import Version, VersionReq

logger = logging.getLogger(__name__)

# singleton 冲突重试上限，防止索引数据异常时无限重启
MAX_RESTARTS = 64


class _SingletonRestart(Exception):
    """singleton 名称出现冲突，需要以新的强制版本重新解析"""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name


@dataclass
class _Pass:
    """单次解析过程的可变状态"""

    graph: DependencyGraph = field(default_factory=DependencyGraph)
    stack: list[PackageId] = field(default_factory=list)
    expanded: set[PackageId] = field(default_factory=set)
    bound: dict[str, Version] = field(default_factory=dict)  # singleton 名称 -> 本轮绑定版本


class DependencyResolver:
    """深度优先依赖解析"""

    def __init__(
        self,
        index: ManifestIndex,
        *,
        singletons: Iterable[str] = (),
        fetch_workers: int = 8,
    ) -> None:
        self.index = index
        self.singletons = frozenset(singletons)
        self.fetch_workers = max(1, fetch_workers)
        self._pool: ThreadPoolExecutor | None = None
        self._candidates: dict[str, Future[list[ManifestEntry]]] = {}
        self._forced: dict[str, Version] = {}
        self._singleton_reqs: dict[str, list[tuple[VersionReq, list[str]]]] = {}
        self._reusable: dict[PackageId, bool] = {}

    # ---- 入口 ----

    def resolve(
        self,
        roots: Iterable[PackageSpec],
        prior: Lockfile | None = None,
        *,
        include_optional: bool = False,
        include_dev: bool = False,
        unlock: Iterable[str] = (),
    ) -> DependencyGraph:
        """解析根声明

        Args:
            roots: 根依赖声明
            prior: 上一次的锁，用于优先复用已锁定版本
            include_optional: 是否解析 opt 依赖
            include_dev: 是否解析 dev 根声明
            unlock: 忽略其锁定版本的名称（repin / update）

        Raises:
            UnsatisfiableConstraint: 某个非可选需求无可用版本
            CyclicDependency: 同身份自引用
            LockfileDrift: 锁定条目违背其声明，或锁引用了不存在的条目
        """
        specs = [s for s in roots if include_dev or not s.dev]
        self._prior = prior or Lockfile()
        self._unlock = frozenset(unlock)
        self._include_optional = include_optional
        self._forced = {}
        self._singleton_reqs = {}
        self._candidates = {}

        with ThreadPoolExecutor(
            max_workers=self.fetch_workers, thread_name_prefix="rf-fetch",
        ) as pool:
            self._pool = pool
            try:
                for attempt in range(MAX_RESTARTS):
                    self._reusable = {}
                    try:
                        graph = self._resolve_pass(specs)
                    except _SingletonRestart as restart:
                        logger.info(
                            "singleton %s 出现冲突，以 %s 重新解析 (第 %d 次)",
                            restart.name, self._forced[restart.name], attempt + 1,
                        )
                        continue
                    graph.validate()
                    logger.info("解析完成: %d 个节点, %d 个根", len(graph), len(graph.roots))
                    return graph
            finally:
                self._pool = None
        raise UnsatisfiableConstraint(
            ",".join(sorted(self._forced)), ["singleton 冲突无法收敛"],
        )

    def _resolve_pass(self, specs: list[PackageSpec]) -> DependencyGraph:
        state = _Pass()
        self._prefetch(specs)
        for spec in specs:
            if spec.optional and not self._include_optional:
                logger.info("跳过未请求的可选根依赖: %s", spec)
                continue
            pid = self._require_guarded(state, spec, [])
            if pid is not None:
                state.graph.add_root(pid)
        return state.graph

    # ---- 候选版本 ----

    def _prefetch(self, specs: Iterable[PackageSpec]) -> None:
        """后台预取版本列表；旧锁能满足的需求不查询索引"""
        for spec in specs:
            if spec.name in self._forced or self._prefers_lock(spec):
                continue
            self._submit(spec.name)

    def _prefers_lock(self, spec: PackageSpec) -> bool:
        if spec.name in self._unlock:
            return False
        return any(spec.req.matches(e.id.version) for e in self._prior.by_name(spec.name))

    def _submit(self, name: str) -> None:
        assert self._pool is not None
        if name not in self._candidates:
            self._candidates[name] = self._pool.submit(self.index.list_versions, name)

    def _versions(self, name: str) -> list[ManifestEntry]:
        self._submit(name)
        return self._candidates[name].result()

    # ---- 单个需求 ----

    def _require_guarded(
        self, state: _Pass, spec: PackageSpec, chain: list[str],
    ) -> PackageId | None:
        """opt 依赖失败时回滚半成品并省略，其余错误原样抛出"""
        if not spec.optional:
            return self._require(state, spec, chain)
        keep = state.graph.snapshot()
        bound = dict(state.bound)
        reqs = {k: list(v) for k, v in self._singleton_reqs.items()}
        try:
            return self._require(state, spec, chain)
        except RockforgeError as e:
            state.expanded -= set(state.graph.rollback(keep))
            state.bound = bound
            self._singleton_reqs = reqs
            logger.warning("可选依赖 %s 解析失败，已省略: %s", spec, e)
            return None

    def _require(self, state: _Pass, spec: PackageSpec, chain: list[str]) -> PackageId:
        here = chain + [str(spec)]
        version, locked = self._choose(spec, here)
        pid = PackageId(spec.name, version)
        self._bind_singleton(state, pid, spec.req, here)

        if pid in state.stack:
            start = state.stack.index(pid)
            raise CyclicDependency([str(p) for p in state.stack[start:]] + [str(pid)])
        if pid in state.expanded:
            node = state.graph[pid]
            node.pinned = node.pinned or spec.pinned
            return pid

        if locked is not None and self._lock_reusable(locked.id, set()):
            self._expand_locked(state, locked, spec)
        else:
            self._expand_indexed(state, pid, spec, here)
        return pid

    def _choose(self, spec: PackageSpec, chain: list[str]) -> tuple[Version, LockEntry | None]:
        """按 强制 singleton > 旧锁 > 索引最高 的顺序选版本"""
        name, req = spec.name, spec.req
        forced = self._forced.get(name)
        if forced is not None:
            return forced, self._locked_entry(name, forced)

        if name not in self._unlock:
            locked = [e for e in self._prior.by_name(name) if req.matches(e.id.version)]
            if locked:
                entry = locked[-1]
                logger.info("复用锁定版本: %s (约束 %s)", entry.id, req)
                return entry.id.version, entry
            pinned = [e for e in self._prior.by_name(name) if e.pinned]
            if spec.pinned and pinned:
                raise LockfileDrift(
                    str(pinned[-1].id),
                    f"锁定版本不满足声明 '{req}'，请使用 repin 显式更新",
                )

        candidates = [e for e in self._versions(name) if req.matches(e.version)]
        if not candidates:
            raise UnsatisfiableConstraint(name, [str(req)], chain)
        best = candidates[-1]
        logger.info("选定版本: %s@%s (约束 %s)", name, best.version, req)
        return best.version, None

    def _locked_entry(self, name: str, version: Version) -> LockEntry | None:
        if name in self._unlock:
            return None
        return self._prior.get(PackageId(name, version))

    # ---- singleton ----

    def _bind_singleton(
        self, state: _Pass, pid: PackageId, req: VersionReq | None, chain: list[str],
    ) -> None:
        """req 为 None 表示来自锁定子图的边，只检查绑定不记录约束"""
        if pid.name not in self.singletons:
            return
        reqs = self._singleton_reqs.setdefault(pid.name, [])
        if req is not None and all(str(r) != str(req) for r, _ in reqs):
            reqs.append((req, chain))
        current = state.bound.get(pid.name)
        if current is None or current == pid.version:
            state.bound[pid.name] = pid.version
            return

        # 同一轮内出现第二个版本：汇总全部约束，强制同一版本后重启
        combined = [r for r, _ in reqs]
        fits = [
            e.version for e in self._versions(pid.name)
            if all(r.matches(e.version) for r in combined)
        ]
        pinned = [e.id.version for e in self._prior.by_name(pid.name) if e.pinned]
        if pinned and pid.name not in self._unlock:
            fits = [v for v in fits if v in pinned]
        if not fits:
            raise UnsatisfiableConstraint(pid.name, [str(r) for r in combined], chain)
        choice = fits[-1]
        if self._forced.get(pid.name) == choice:
            raise UnsatisfiableConstraint(pid.name, [str(r) for r in combined], chain)
        self._forced[pid.name] = choice
        raise _SingletonRestart(pid.name)

    # ---- 展开 ----

    def _lock_reusable(self, pid: PackageId, visiting: set[PackageId]) -> bool:
        """锁定子图能否原样复用：条目齐全、不含 unlock 名称、与强制版本一致"""
        if pid in self._reusable:
            return self._reusable[pid]
        if pid in visiting:
            return True
        entry = self._prior.get(pid)
        ok = (
            entry is not None
            and pid.name not in self._unlock
            and self._forced.get(pid.name, pid.version) == pid.version
        )
        if ok:
            visiting.add(pid)
            ok = all(
                self._lock_reusable(d, visiting)
                for d in entry.dependencies + entry.build_dependencies  # type: ignore[union-attr]
            )
            visiting.discard(pid)
        self._reusable[pid] = ok
        return ok

    def _expand_locked(self, state: _Pass, entry: LockEntry, spec: PackageSpec | None) -> None:
        """按旧锁重建节点及其子图，不查询清单索引"""
        pid = entry.id
        if pid in state.stack:
            start = state.stack.index(pid)
            raise CyclicDependency([str(p) for p in state.stack[start:]] + [str(pid)])
        if pid in state.expanded:
            return
        node = state.graph.add(ResolvedPackage(
            id=pid,
            source=entry.source,
            integrity=entry.integrity or None,
            pinned=entry.pinned or (spec is not None and spec.pinned),
            optional=entry.optional if spec is None else spec.optional,
            constraint=entry.constraint if spec is None else str(spec.req),
            from_lock=True,
        ))
        state.stack.append(pid)
        try:
            for dep in entry.dependencies + entry.build_dependencies:
                dep_entry = self._prior.get(dep)
                if dep_entry is None:
                    raise LockfileDrift(str(dep), f"被 {pid} 引用，但锁文件中没有该条目")
                self._bind_singleton(state, dep, None, [str(pid), str(dep)])
                self._expand_locked(state, dep_entry, None)
        finally:
            state.stack.pop()
        node.dependencies = list(entry.dependencies)
        node.build_dependencies = list(entry.build_dependencies)
        node.optional_dependencies = [
            d for d in entry.dependencies
            if (e := self._prior.get(d)) is not None and e.optional
        ]
        state.expanded.add(pid)

    def _expand_indexed(
        self, state: _Pass, pid: PackageId, spec: PackageSpec, chain: list[str],
    ) -> None:
        try:
            manifest = self.index.get(pid.name, pid.version)
        except PackageNotFoundError:
            raise LockfileDrift(str(pid), "锁文件引用的版本在清单索引中不存在") from None

        node = state.graph.add(ResolvedPackage(
            id=pid,
            source=spec.source or manifest.source,
            integrity=manifest.integrity or self._locked_integrity(pid),
            pinned=spec.pinned,
            optional=spec.optional,
            constraint=str(spec.req),
            build_spec=manifest.build_spec,
        ))
        wanted = [
            d for d in manifest.dependencies if self._include_optional or not d.optional
        ]
        self._prefetch(wanted + manifest.build_dependencies)

        state.stack.append(pid)
        try:
            for dep in wanted:
                child = self._require_guarded(state, dep, chain)
                if child is not None and child not in node.dependencies:
                    node.dependencies.append(child)
                    if dep.optional:
                        node.optional_dependencies.append(child)
            for dep in manifest.build_dependencies:
                child = self._require_guarded(state, dep, chain)
                if child is not None and child not in node.build_dependencies:
                    node.build_dependencies.append(child)
        finally:
            state.stack.pop()
        state.expanded.add(pid)

    def _locked_integrity(self, pid: PackageId) -> str | None:
        entry = self._prior.get(pid)
        return entry.integrity if entry is not None and entry.integrity else None
