"""DependencyGraph 单元测试"""

from __future__ import annotations

import pytest

from rockforge.core.exceptions import CyclicDependency, LockfileDrift
from rockforge.core.graph import DependencyGraph
from rockforge.core.models import ResolvedPackage, parse_package_id


def pid(text: str):
    return parse_package_id(text)


def node(text: str, deps: tuple[str, ...] = (), build: tuple[str, ...] = ()) -> ResolvedPackage:
    return ResolvedPackage(
        id=pid(text),
        dependencies=[pid(d) for d in deps],
        build_dependencies=[pid(d) for d in build],
    )


@pytest.fixture()
def diamond() -> DependencyGraph:
    """app -> (json, http) -> base；http 构建期依赖 make-tool"""
    g = DependencyGraph()
    g.add(node("app@1.0", ("json@2.0", "http@1.1")))
    g.add(node("json@2.0", ("base@1.0",)))
    g.add(node("http@1.1", ("base@1.0",), build=("make-tool@3.0",)))
    g.add(node("base@1.0"))
    g.add(node("make-tool@3.0"))
    g.add_root(pid("app@1.0"))
    return g


class TestArena:
    def test_add_returns_existing(self) -> None:
        g = DependencyGraph()
        first = g.add(node("a@1.0"))
        second = g.add(node("a@1.0", ("b@1.0",)))
        assert second is first
        assert len(g) == 1

    def test_same_name_versions_coexist(self) -> None:
        g = DependencyGraph()
        g.add(node("a@1.0"))
        g.add(node("a@2.0"))
        assert [str(n.id) for n in g.by_name("a")] == ["a@1.0", "a@2.0"]

    def test_rollback(self, diamond: DependencyGraph) -> None:
        keep = {pid("base@1.0")}
        dropped = diamond.rollback(keep)
        assert pid("app@1.0") in dropped
        assert diamond.ids() == [pid("base@1.0")]
        assert diamond.roots == []


class TestEdges:
    def test_build_edges_count(self, diamond: DependencyGraph) -> None:
        assert (pid("http@1.1"), pid("make-tool@3.0")) in diamond.edges()

    def test_validate_dangling(self) -> None:
        g = DependencyGraph()
        g.add(node("a@1.0", ("missing@1.0",)))
        with pytest.raises(LockfileDrift, match="missing@1.0"):
            g.validate()


class TestOrder:
    def test_layers(self, diamond: DependencyGraph) -> None:
        layers = [[str(p) for p in layer] for layer in diamond.layers()]
        assert layers == [
            ["base@1.0", "make-tool@3.0"],
            ["http@1.1", "json@2.0"],
            ["app@1.0"],
        ]

    def test_dependencies_come_first(self, diamond: DependencyGraph) -> None:
        order = diamond.topological_order()
        for src, dst in diamond.edges():
            assert order.index(dst) < order.index(src)

    def test_subset_ignores_outside_edges(self, diamond: DependencyGraph) -> None:
        order = diamond.topological_order([pid("app@1.0"), pid("json@2.0")])
        assert order == [pid("json@2.0"), pid("app@1.0")]

    def test_cycle(self) -> None:
        g = DependencyGraph()
        g.add(node("a@1.0", ("b@1.0",)))
        g.add(node("b@1.0", ("c@1.0",)))
        g.add(node("c@1.0", ("a@1.0",)))
        with pytest.raises(CyclicDependency) as exc:
            g.layers()
        assert exc.value.chain[0] == exc.value.chain[-1]
        assert set(exc.value.chain) == {"a@1.0", "b@1.0", "c@1.0"}

    def test_self_loop(self) -> None:
        g = DependencyGraph()
        g.add(node("a@1.0", ("a@1.0",)))
        with pytest.raises(CyclicDependency):
            g.layers()

    def test_cross_version_is_not_a_cycle(self) -> None:
        g = DependencyGraph()
        g.add(node("a@2.0", ("a@1.0",)))
        g.add(node("a@1.0"))
        assert g.topological_order() == [pid("a@1.0"), pid("a@2.0")]

    def test_restrict_shares_nodes(self, diamond: DependencyGraph) -> None:
        plan = diamond.restrict([pid("app@1.0"), pid("base@1.0")])
        assert plan.ids() == [pid("app@1.0"), pid("base@1.0")]
        assert plan[pid("app@1.0")] is diamond[pid("app@1.0")]
        assert plan.roots == [pid("app@1.0")]
