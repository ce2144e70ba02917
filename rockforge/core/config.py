"""集中配置管理

从 YAML 文件加载 + 编程式覆盖，每个字段都有默认值。
不提供进程级单例：入口处加载一次，随 ProjectContext 显式传递。
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

from rockforge.core.exceptions import ConfigError
from rockforge.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "rockforge.yml"


@dataclass
class Config:
    """包管理器配置"""

    # 路径
    tree_dir: str = ".rockforge/tree"
    lockfile: str = "rockforge.lock"
    project_file: str = "rockforge-project.yml"
    index_file: str = "index.yml"
    cache_dir: str = ".rockforge/cache"

    # 并发
    max_workers: int = 4
    fetch_workers: int = 8
    fail_fast: bool = False

    # 解析
    singleton_tools: list[str] = field(default_factory=list)

    # 构建
    legacy_tool: str = "luarocks"
    process_timeout: int = 3600
    lock_timeout: float = 30.0

    # 自定义扩展
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_file(cls, path: str = DEFAULT_CONFIG_FILE) -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        data = load_yaml(path)
        if not data:
            return cls()
        known = {f.name for f in cls.__dataclass_fields__.values()} - {"extra"}
        matched = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        try:
            cfg = cls(**matched)
        except TypeError as e:
            raise ConfigError(f"配置文件 {path} 无效: {e}") from e
        cfg.extra = extra
        cfg.validate()
        logger.info("配置已加载: %s", path)
        return cfg

    def validate(self) -> None:
        if int(self.max_workers) < 1 or int(self.fetch_workers) < 1:
            raise ConfigError("max_workers / fetch_workers 必须 >= 1")
        if not isinstance(self.singleton_tools, list):
            raise ConfigError("singleton_tools 必须是列表")

    def rebase(self, root: str | Path) -> Config:
        """把相对路径统一解析到项目根目录下"""
        base = Path(root)

        def _abs(p: str) -> str:
            return p if Path(p).is_absolute() else str(base / p)

        return Config(
            tree_dir=_abs(self.tree_dir),
            lockfile=_abs(self.lockfile),
            project_file=_abs(self.project_file),
            index_file=_abs(self.index_file),
            cache_dir=_abs(self.cache_dir),
            max_workers=self.max_workers,
            fetch_workers=self.fetch_workers,
            fail_fast=self.fail_fast,
            singleton_tools=list(self.singleton_tools),
            legacy_tool=self.legacy_tool,
            process_timeout=self.process_timeout,
            lock_timeout=self.lock_timeout,
            extra=dict(self.extra),
        )

    def to_dict(self) -> dict:
        return asdict(self)
