"""项目上下文 - 一次调用内共享的协作者

锁文件路径、安装树、清单索引、项目声明都挂在上下文上，
随调用显式传递，不存在进程级全局状态；测试中可直接注入替身。

用法:
    ctx = ProjectContext.from_file("rockforge.yml")
    ctx.tree          # 懒加载
    ctx.index

    # 注入替身
    ctx = ProjectContext(Config(), index=fake_index, project=StaticProject([...]))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from rockforge.core.config import DEFAULT_CONFIG_FILE, Config

if TYPE_CHECKING:
    from rockforge.core.index import ManifestIndex
    from rockforge.core.project import ProjectSpecLoader
    from rockforge.core.tree import InstallTree

logger = logging.getLogger(__name__)


class ProjectContext:
    """懒加载的项目上下文"""

    def __init__(
        self,
        config: Config,
        *,
        index: ManifestIndex | None = None,
        tree: InstallTree | None = None,
        project: ProjectSpecLoader | None = None,
    ) -> None:
        self._config = config
        self._instances: dict[str, object] = {}
        if index is not None:
            self._instances["index"] = index
        if tree is not None:
            self._instances["tree"] = tree
        if project is not None:
            self._instances["project"] = project

    @classmethod
    def from_file(cls, path: str | Path = DEFAULT_CONFIG_FILE) -> ProjectContext:
        """加载配置文件，相对路径以配置文件所在目录为基准"""
        p = Path(path)
        config = Config.from_file(str(p)).rebase(p.resolve().parent)
        return cls(config)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def lockfile_path(self) -> Path:
        return Path(self._config.lockfile)

    @property
    def index(self) -> ManifestIndex:
        if "index" not in self._instances:
            from rockforge.core.index import YamlManifestIndex
            self._instances["index"] = YamlManifestIndex.from_file(
                self._config.index_file, cache_dir=self._config.cache_dir,
            )
        return self._instances["index"]  # type: ignore[return-value]

    @property
    def tree(self) -> InstallTree:
        if "tree" not in self._instances:
            from rockforge.core.tree import InstallTree
            self._instances["tree"] = InstallTree(
                self._config.tree_dir, lock_timeout=self._config.lock_timeout,
            )
        return self._instances["tree"]  # type: ignore[return-value]

    @property
    def project(self) -> ProjectSpecLoader:
        if "project" not in self._instances:
            from rockforge.core.project import ProjectFile
            self._instances["project"] = ProjectFile(self._config.project_file)
        return self._instances["project"]  # type: ignore[return-value]
