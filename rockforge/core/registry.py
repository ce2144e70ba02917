"""YAML 注册表基类

项目声明文件与安装树索引共享同一套加载、保存、按键增删改查逻辑。
子类只需指定 section_key。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from rockforge.utils.yaml_io import load_yaml, save_yaml

logger = logging.getLogger(__name__)


class YamlRegistry:
    """YAML 文件注册表基类

    子类用法:
        class MyRegistry(YamlRegistry):
            section_key = "items"
    """

    section_key: str = "entries"

    def __init__(self, registry_file: str | Path) -> None:
        self.registry_file = Path(registry_file)
        self._data: dict[str, Any] = load_yaml(self.registry_file)

    def reload(self) -> None:
        """丢弃内存状态，重新读盘（其他进程可能已修改）"""
        self._data = load_yaml(self.registry_file)

    def _section(self) -> dict[str, Any]:
        """获取当前 section 字典（自动创建）"""
        section = self._data.get(self.section_key)
        if not isinstance(section, dict):
            section = {}
            self._data[self.section_key] = section
        return section

    def _save(self) -> None:
        """持久化到 YAML 文件（原子替换）"""
        save_yaml(self.registry_file, self._data)

    def _put(self, key: str, entry: Any) -> Any:
        """写入条目并保存"""
        self._section()[key] = entry
        self._save()
        return entry

    def _get_raw(self, key: str) -> Any:
        return self._section().get(key)

    def _items_raw(self) -> list[tuple[str, Any]]:
        return list(self._section().items())

    def _remove(self, key: str) -> bool:
        """删除条目"""
        section = self._section()
        if key not in section:
            return False
        del section[key]
        self._save()
        return True
