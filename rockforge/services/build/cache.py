"""已安装产物复用判断

已安装且产物摘要与期望（锁记录）一致时跳过构建；
force 或没有可比对的期望摘要时一律重建。
"""

from __future__ import annotations

import logging

from rockforge.core.models import ResolvedPackage
from rockforge.core.tree import InstallTree

logger = logging.getLogger(__name__)


class InstalledCache:
    """以安装树为缓存的命中检查"""

    def __init__(self, tree: InstallTree, *, force: bool = False) -> None:
        self.tree = tree
        self.force = force

    def check(self, package: ResolvedPackage) -> str | None:
        """命中返回已安装产物的摘要，未命中返回 None"""
        if self.force or not package.integrity:
            return None
        if self.tree.get(package.id) is None:
            return None
        actual = self.tree.artifact_integrity(package.id)
        if actual != package.integrity:
            logger.warning(
                "已安装产物校验失败，重新构建: %s (期望 %s, 实际 %s)",
                package.id, package.integrity, actual,
            )
            return None
        logger.info("已安装，跳过构建: %s", package.id)
        return actual
