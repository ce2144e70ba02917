"""锁文件模型与调和

锁文件是按 ``name@version`` 键控的有序映射，序列化顺序固定
（按名称、再按版本排序），无关操作只产生最小差异。

sync() 把期望的依赖图、上一次的锁与安装树三方调和，产出新锁和差异:
  - unchanged  图中节点与旧锁条目相同，且已安装产物哈希一致
  - added      旧锁没有同名条目
  - updated    同名条目版本变化（旧版本与新版本按名配对）
  - removed    旧锁条目不再可达
  - stale      锁未变，但未安装或产物损坏，需要重新拉取构建
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rockforge.core.exceptions import (
    CorruptArtifact,
    LockfileDrift,
    TreeIntegrityError,
    ValidationError,
)
from rockforge.core.models import LockEntry, PackageId, SyncDiff, parse_package_id
from rockforge.utils.yaml_io import atomic_write, dump_yaml, load_yaml

if TYPE_CHECKING:
    from rockforge.core.graph import DependencyGraph
    from rockforge.core.tree import InstallTree

logger = logging.getLogger(__name__)

LOCK_FORMAT_VERSION = 1


class Lockfile:
    """锁文件内存模型"""

    def __init__(
        self, entries: Iterable[LockEntry] = (), roots: Iterable[PackageId] = (),
    ) -> None:
        self._entries: dict[PackageId, LockEntry] = {e.id: e for e in entries}
        self.roots: list[PackageId] = sorted(set(roots))

    # ---- 读写 ----

    @classmethod
    def load(cls, path: str | Path) -> Lockfile:
        """读取锁文件，不存在时返回空锁"""
        data = load_yaml(path)
        if not data:
            return cls()
        version = data.get("version", LOCK_FORMAT_VERSION)
        if version != LOCK_FORMAT_VERSION:
            raise ValidationError(f"不支持的锁文件版本: {version} ({path})")
        entries = [
            LockEntry.from_dict(key, value or {})
            for key, value in (data.get("packages") or {}).items()
        ]
        roots = [parse_package_id(r) for r in data.get("roots") or []]
        return cls(entries, roots)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": LOCK_FORMAT_VERSION,
            "roots": [str(r) for r in sorted(self.roots)],
            "packages": {
                str(e.id): dict(sorted(e.to_dict().items())) for e in self.entries()
            },
        }

    def to_yaml(self) -> str:
        return dump_yaml(self.to_dict())

    def save(self, path: str | Path) -> None:
        """原子写入：读者只会看到完整的旧锁或新锁"""
        atomic_write(Path(path), self.to_yaml())
        logger.info("锁文件已写入: %s (%d 个条目)", path, len(self))

    # ---- 查询 ----

    def entries(self) -> list[LockEntry]:
        return [self._entries[pid] for pid in sorted(self._entries)]

    def get(self, pid: PackageId) -> LockEntry | None:
        return self._entries.get(pid)

    def by_name(self, name: str) -> list[LockEntry]:
        return [e for e in self.entries() if e.id.name == name]

    def __contains__(self, pid: object) -> bool:
        return pid in self._entries

    def __iter__(self) -> Iterator[LockEntry]:
        return iter(self.entries())

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Lockfile):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    # ---- 修改 ----

    def put(self, entry: LockEntry) -> None:
        self._entries[entry.id] = entry

    def discard(self, pid: PackageId) -> bool:
        self.roots = [r for r in self.roots if r != pid]
        return self._entries.pop(pid, None) is not None

    def set_integrity(self, pid: PackageId, integrity: str) -> None:
        entry = self._entries.get(pid)
        if entry is None:
            raise LockfileDrift(str(pid), "锁文件中没有该条目")
        entry.integrity = integrity

    def set_pinned(self, name: str, pinned: bool) -> int:
        """翻转某名称全部条目的 pinned 标记，返回受影响条目数"""
        changed = 0
        for entry in self.by_name(name):
            if entry.pinned != pinned:
                entry.pinned = pinned
                changed += 1
        return changed


def sync(
    graph: DependencyGraph,
    prior: Lockfile,
    tree: InstallTree,
    *,
    unlock: Iterable[str] = (),
    strict: bool = False,
) -> tuple[Lockfile, SyncDiff]:
    """调和期望图、旧锁与安装树

    Args:
        unlock: 允许移动的锁定名称（repin / update）
        strict: 为 True 时，锁中条目未安装抛 TreeIntegrityError，
                产物哈希不符抛 CorruptArtifact；否则记入 stale 等待重建

    Raises:
        LockfileDrift: 根仍在但其锁定条目从图中消失且未显式 repin
    """
    unlocked = set(unlock)
    new_ids = set(graph.ids())
    prior_ids = {e.id for e in prior}
    root_names = {r.name for r in graph.roots}
    diff = SyncDiff()

    for entry in prior:
        if entry.id in new_ids or not entry.pinned:
            continue
        if entry.id.name in root_names and entry.id.name not in unlocked:
            raise LockfileDrift(str(entry.id), "锁定版本不在新的解析结果中，需要显式 repin")

    for pid in sorted(new_ids & prior_ids):
        expected = prior.get(pid).integrity  # type: ignore[union-attr]
        installed = tree.get(pid)
        if installed is None:
            if strict:
                raise TreeIntegrityError(str(pid), "锁文件引用的条目未安装")
            logger.info("锁条目未安装，需要构建: %s", pid)
            diff.stale.append(pid)
            continue
        actual = tree.artifact_integrity(pid)
        if expected and actual == expected:
            diff.unchanged.append(pid)
            continue
        if strict:
            raise CorruptArtifact(str(pid), expected, actual or "(缺失)")
        logger.warning("产物哈希不符，强制重新拉取构建: %s (期望 %s, 实际 %s)", pid, expected, actual)
        diff.stale.append(pid)
        diff.corrupt.append(pid)

    fresh = sorted(new_ids - prior_ids)
    gone = sorted(prior_ids - new_ids)
    gone_by_name: dict[str, list[PackageId]] = {}
    for pid in gone:
        gone_by_name.setdefault(pid.name, []).append(pid)
    for pid in fresh:
        olds = gone_by_name.get(pid.name)
        if olds:
            diff.updated.append((olds.pop(0), pid))
        else:
            diff.added.append(pid)
    for olds in gone_by_name.values():
        diff.removed.extend(olds)
    diff.removed.sort()

    entries = []
    for pid in sorted(new_ids):
        node = graph[pid]
        old = prior.get(pid)
        integrity = old.integrity if old is not None else (node.integrity or "")
        entries.append(LockEntry.from_resolved(node, integrity))
    new_lock = Lockfile(entries, graph.roots)

    logger.info(
        "锁调和: 新增 %d, 更新 %d, 移除 %d, 未变 %d, 需重建 %d",
        len(diff.added), len(diff.updated), len(diff.removed),
        len(diff.unchanged), len(diff.stale),
    )
    return new_lock, diff
