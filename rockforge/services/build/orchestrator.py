"""并行构建编排

构建计划 = 依赖图中需要（重新）构建的节点。调度规则:
  - 每个身份在连接表（identity -> Future）中只登记一次，
    重复请求拿到同一个 Future，后端只被调用一次
  - 节点的全部计划内依赖完成并登记进安装树后才提交到线程池，
    工作线程从不阻塞等待其他任务，有界线程池不会因此死锁
  - 依赖失败的节点标记 skipped，其余分支继续；
    fail_fast 时取消尚未开始的节点并终止在跑的外部进程
  - 调用方被中断（KeyboardInterrupt 等）时同样取消并终止外部进程，再把中断抛给调用方
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from functools import partial
from pathlib import Path

from rockforge.core.exceptions import (
    BuildFailure,
    CorruptArtifact,
    OperationCancelled,
    RockforgeError,
    TreeIntegrityError,
)
from rockforge.core.graph import DependencyGraph
from rockforge.core.index import ManifestIndex
from rockforge.core.models import BackendKind, PackageId, PackageReport, ResolvedPackage
from rockforge.core.tree import InstallTree
from rockforge.services.build.backends import (
    PREFIX_DIR,
    SRC_DIR,
    BackendEnv,
    BuildBackend,
    make_backends,
)
from rockforge.services.build.cache import InstalledCache
from rockforge.utils.archive import unpack_archive
from rockforge.utils.shell import ProcessGroup

logger = logging.getLogger(__name__)


class _DepCounter:
    """等待中的依赖计数，归零时触发提交"""

    def __init__(self, count: int) -> None:
        self._count = count
        self._lock = threading.Lock()

    def done(self) -> bool:
        with self._lock:
            self._count -= 1
            return self._count == 0


class BuildOrchestrator:
    """按依赖顺序并发构建并原子安装"""

    def __init__(
        self,
        index: ManifestIndex,
        tree: InstallTree,
        *,
        max_workers: int = 4,
        fail_fast: bool = False,
        force: bool = False,
        validate_integrity: bool = True,
        timeout: int | None = None,
        legacy_tool: str = "luarocks",
        project_roots: bool = False,
        backends: dict[BackendKind, BuildBackend] | None = None,
        processes: ProcessGroup | None = None,
    ) -> None:
        self.index = index
        self.tree = tree
        self.max_workers = max(1, max_workers)
        self.fail_fast = fail_fast
        self.validate_integrity = validate_integrity
        self.project_roots = project_roots
        self.processes = processes or ProcessGroup()
        self.backends = backends or make_backends(BackendEnv(
            tree=tree, executor=self.processes, timeout=timeout, legacy_tool=legacy_tool,
        ))
        self.cache = InstalledCache(tree, force=force)
        self._table: dict[PackageId, Future[PackageReport]] = {}
        self._table_lock = threading.Lock()
        self._pool: ThreadPoolExecutor | None = None
        self._plan: DependencyGraph | None = None
        self._cancelled = threading.Event()
        self.integrity: dict[PackageId, str] = {}

    # ---- 入口 ----

    def execute(self, plan: DependencyGraph) -> list[PackageReport]:
        """执行构建计划，返回按拓扑顺序排列的逐包报告

        计划外的依赖必须已经在安装树中。
        """
        order = plan.topological_order()
        if not order:
            return []
        self._check_external_deps(plan)
        self._plan = plan
        self._table = {}
        self._cancelled.clear()
        logger.info("构建计划: %d 个包, 并发 %d", len(order), self.max_workers)

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="rf-build",
        ) as pool:
            self._pool = pool
            try:
                futures = [self.request(pid) for pid in order]
                wait(futures)
            except BaseException:
                self._interrupt(pool)
                raise
            finally:
                self._pool = None
        reports = [f.result() for f in futures]
        failed = sum(1 for r in reports if r.failed)
        logger.info("构建结束: %d 成功, %d 失败/跳过", len(reports) - failed, failed)
        return reports

    def _interrupt(self, pool: ThreadPoolExecutor) -> None:
        self._cancelled.set()
        killed = self.processes.terminate_all()
        logger.warning("构建被中断: 终止 %d 个外部进程，取消排队中的构建", killed)
        pool.shutdown(wait=True, cancel_futures=True)
        # 排队中被丢弃的任务不会再回填连接表
        assert self._plan is not None
        for pid in self._plan.topological_order():
            fut = self._table.get(pid)
            if fut is not None and not fut.done():
                fut.set_result(self._report(self._plan[pid], "cancelled", message="构建已中断"))

    def _check_external_deps(self, plan: DependencyGraph) -> None:
        for node in plan:
            for dep in node.dependencies + node.build_dependencies:
                if dep not in plan and self.tree.get(dep) is None:
                    raise TreeIntegrityError(str(dep), f"{node.id} 的依赖既不在构建计划中也未安装")

    # ---- 连接表 ----

    def request(self, pid: PackageId) -> Future[PackageReport]:
        """请求构建某身份；同一身份只触发一次构建，其余请求共享同一 Future"""
        with self._table_lock:
            existing = self._table.get(pid)
            if existing is not None:
                return existing
            fut: Future[PackageReport] = Future()
            self._table[pid] = fut

        assert self._plan is not None
        node = self._plan[pid]
        deps = sorted({
            d for d in node.dependencies + node.build_dependencies if d in self._plan
        })
        pending = {d: self.request(d) for d in deps}
        if not pending:
            self._submit(node, fut, {})
            return fut
        counter = _DepCounter(len(pending))
        for dep_fut in pending.values():
            dep_fut.add_done_callback(partial(self._dep_done, node, fut, pending, counter))
        return fut

    def _dep_done(
        self, node: ResolvedPackage, fut: Future[PackageReport],
        deps: dict[PackageId, Future[PackageReport]], counter: _DepCounter, _done: Future,
    ) -> None:
        if counter.done():
            self._submit(node, fut, deps)

    def _submit(
        self, node: ResolvedPackage, fut: Future[PackageReport],
        deps: dict[PackageId, Future[PackageReport]],
    ) -> None:
        failed = [
            pid for pid, d in deps.items() if d.exception() is not None or d.result().failed
        ]
        if failed:
            names = ", ".join(str(pid) for pid in failed)
            logger.warning("跳过 %s: 依赖构建失败 (%s)", node.id, names)
            fut.set_result(self._report(node, "skipped", message=f"依赖失败: {names}"))
            return
        pool = self._pool
        if self._cancelled.is_set() or pool is None:
            fut.set_result(self._report(node, "cancelled", message="构建已取消"))
            return
        try:
            pool.submit(self._run, node, fut)
        except RuntimeError:
            # 中断后线程池已关闭
            fut.set_result(self._report(node, "cancelled", message="构建已中断"))

    # ---- 单包构建 ----

    def _report(self, node: ResolvedPackage, status: str, **kwargs) -> PackageReport:
        backend = node.build_spec.kind.value if node.build_spec is not None else ""
        return PackageReport(
            name=node.name, version=str(node.version), status=status, backend=backend, **kwargs,
        )

    def _run(self, node: ResolvedPackage, fut: Future[PackageReport]) -> None:
        start = time.monotonic()
        try:
            report = self._build(node)
        except OperationCancelled as e:
            report = self._report(node, "cancelled", message=str(e))
        except RockforgeError as e:
            logger.error("%s", e)
            report = self._report(node, "failed", message=str(e))
            self._on_failure()
        except (OSError, ValueError) as e:
            logger.exception("构建 %s 时发生意外错误", node.id)
            report = self._report(node, "failed", message=str(e))
            self._on_failure()
        except BaseException as e:
            fut.set_exception(e)
            raise
        report.duration = time.monotonic() - start
        fut.set_result(report)

    def _on_failure(self) -> None:
        if self.fail_fast and not self._cancelled.is_set():
            self._cancelled.set()
            killed = self.processes.terminate_all()
            logger.warning("fail-fast: 取消剩余构建，终止 %d 个外部进程", killed)

    def _build(self, node: ResolvedPackage) -> PackageReport:
        if node.build_spec is None:
            node.build_spec = self.index.get(node.name, node.version).build_spec

        cached = self.cache.check(node)
        if cached is not None:
            self.integrity[node.id] = cached
            return self._report(node, "cached", message="已安装且校验通过")

        if self._cancelled.is_set():
            raise OperationCancelled(f"{node.id} 未开始即被取消")

        data, integrity = self.index.fetch_source(node)
        self.tree.staging_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(dir=self.tree.staging_dir, prefix=f"build-{node.name}-"))
        try:
            top = unpack_archive(data, work_dir / "unpack")
            shutil.move(str(top), str(work_dir / SRC_DIR))
            (work_dir / PREFIX_DIR).mkdir(exist_ok=True)

            kind = node.build_spec.kind
            logger.info("开始构建: %s [%s]", node.id, kind.value)
            result = self.backends[kind].execute(node, work_dir)
            if not result.success or result.prefix is None:
                raise BuildFailure(str(node.id), kind.value, result.message or "后端未产出安装前缀")

            is_root = self._plan is not None and node.id in self._plan.roots
            entry = self.tree.install(
                node, result.prefix, source_archive=data,
                entrypoints=result.entrypoints,
                root=is_root and not self.project_roots,
                project=is_root and self.project_roots,
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        if self.validate_integrity:
            actual = self.tree.artifact_integrity(node.id)
            if actual != integrity:
                raise CorruptArtifact(str(node.id), integrity, actual or "(缺失)")
        node.integrity = integrity
        self.integrity[node.id] = entry.artifact_hash
        logger.info("构建完成: %s (%.1fs)", node.id, result.duration)
        return self._report(node, "built", message=f"{len(result.entrypoints)} 个入口")
