"""依赖图 - 以包身份为键的节点仓

节点按 (name, version) 寻址，同名多版本可以并存；
边为 消费者 -> 依赖身份，运行时依赖与构建期依赖都参与构建顺序。
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from rockforge.core.exceptions import CyclicDependency, LockfileDrift
from rockforge.core.models import PackageId, ResolvedPackage

logger = logging.getLogger(__name__)


class DependencyGraph:
    """解析结果：节点仓 + 根集合"""

    def __init__(self) -> None:
        self._nodes: dict[PackageId, ResolvedPackage] = {}
        self.roots: list[PackageId] = []

    # ---- 节点仓 ----

    def add(self, node: ResolvedPackage) -> ResolvedPackage:
        """登记节点，已存在同身份节点时返回既有节点"""
        return self._nodes.setdefault(node.id, node)

    def add_root(self, pid: PackageId) -> None:
        if pid not in self.roots:
            self.roots.append(pid)

    def get(self, pid: PackageId) -> ResolvedPackage | None:
        return self._nodes.get(pid)

    def __getitem__(self, pid: PackageId) -> ResolvedPackage:
        return self._nodes[pid]

    def __contains__(self, pid: object) -> bool:
        return pid in self._nodes

    def __iter__(self) -> Iterator[ResolvedPackage]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def ids(self) -> list[PackageId]:
        return sorted(self._nodes)

    def by_name(self, name: str) -> list[ResolvedPackage]:
        return sorted((n for n in self._nodes.values() if n.name == name), key=lambda n: n.id)

    def snapshot(self) -> set[PackageId]:
        return set(self._nodes)

    def rollback(self, keep: set[PackageId]) -> list[PackageId]:
        """删除 keep 之外的节点（可选依赖解析失败时撤销半成品）"""
        dropped = [pid for pid in self._nodes if pid not in keep]
        for pid in dropped:
            del self._nodes[pid]
        self.roots = [r for r in self.roots if r in self._nodes]
        return dropped

    # ---- 边 ----

    @staticmethod
    def _out(node: ResolvedPackage) -> list[PackageId]:
        return list(node.dependencies) + [
            d for d in node.build_dependencies if d not in node.dependencies
        ]

    def edges(self) -> list[tuple[PackageId, PackageId]]:
        return sorted(
            (node.id, dep) for node in self._nodes.values() for dep in self._out(node)
        )

    def validate(self) -> None:
        """每条边的目标都必须是图内节点"""
        for src, dst in self.edges():
            if dst not in self._nodes:
                raise LockfileDrift(str(dst), f"被 {src} 引用，但不在依赖图中")

    # ---- 构建顺序 ----

    def layers(self, subset: Iterable[PackageId] | None = None) -> list[list[PackageId]]:
        """拓扑分层：每层内的节点互不依赖，依赖总在更早的层

        subset 限定参与排序的节点，指向 subset 之外的边视为已满足。

        Raises:
            CyclicDependency: 存在同身份环
        """
        members = set(self._nodes if subset is None else subset) & set(self._nodes)
        remaining = {
            pid: {d for d in self._out(self._nodes[pid]) if d in members and d != pid}
            for pid in members
        }
        for pid in members:
            if pid in self._out(self._nodes[pid]):
                raise CyclicDependency([str(pid), str(pid)])

        result: list[list[PackageId]] = []
        done: set[PackageId] = set()
        while remaining:
            ready = sorted(pid for pid, deps in remaining.items() if deps <= done)
            if not ready:
                raise CyclicDependency(self._find_cycle(remaining))
            result.append(ready)
            done.update(ready)
            for pid in ready:
                del remaining[pid]
        return result

    def topological_order(self, subset: Iterable[PackageId] | None = None) -> list[PackageId]:
        return [pid for layer in self.layers(subset) for pid in layer]

    @staticmethod
    def _find_cycle(remaining: dict[PackageId, set[PackageId]]) -> list[str]:
        start = min(remaining)
        path: list[PackageId] = [start]
        seen = {start: 0}
        cur = start
        while True:
            nxt = min(d for d in remaining[cur] if d in remaining)
            if nxt in seen:
                cycle = path[seen[nxt]:] + [nxt]
                return [str(p) for p in cycle]
            seen[nxt] = len(path)
            path.append(nxt)
            cur = nxt

    def restrict(self, ids: Iterable[PackageId]) -> DependencyGraph:
        """构建计划：只保留需要（重新）构建的节点，共享节点对象"""
        keep = set(ids)
        plan = DependencyGraph()
        for pid in sorted(keep):
            node = self._nodes.get(pid)
            if node is not None:
                plan.add(node)
        plan.roots = [r for r in self.roots if r in keep]
        return plan
