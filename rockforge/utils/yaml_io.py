"""YAML 文件统一读写

锁文件、安装树索引、项目声明、清单索引都走这里：
统一 UTF-8、空值保护、原子写入、可选的确定性键序。
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# 单个 YAML 文件大小上限 (10MB)
MAX_YAML_SIZE = 10 * 1024 * 1024


def atomic_write(path: Path, content: str | bytes) -> None:
    """原子写入：同目录临时文件 + os.replace，读者只会看到旧内容或新内容

    异常:
        OSError: 写入或替换失败（临时文件会被清理）
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    mode = "wb" if isinstance(content, bytes) else "w"
    try:
        if mode == "wb":
            with os.fdopen(fd, "wb") as f:
                f.write(content)
        else:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
        os.replace(tmp, str(path))
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def load_yaml(path: str | Path) -> dict[str, Any]:
    """读取 YAML 映射

    文件不存在、为空或顶层不是字典时返回空字典。

    异常:
        yaml.YAMLError: 语法错误
        ValueError: 文件超过 MAX_YAML_SIZE
    """
    p = Path(path)
    if not p.exists():
        return {}

    size = p.stat().st_size
    if size > MAX_YAML_SIZE:
        raise ValueError(f"YAML 文件过大: {p} ({size} 字节)，上限 {MAX_YAML_SIZE} 字节")

    try:
        with open(p, encoding="utf-8") as f:
            result = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error("解析 YAML 失败: %s, 错误: %s", p, e)
        raise

    if result is None:
        return {}
    if not isinstance(result, dict):
        logger.warning("%s 顶层不是映射 (实际: %s)，按空处理", p, type(result).__name__)
        return {}
    return result


def dump_yaml(data: Any, *, sort_keys: bool = False) -> str:
    """序列化为块风格 YAML 文本；sort_keys=True 时输出与插入顺序无关"""
    return yaml.safe_dump(
        data, default_flow_style=False,
        allow_unicode=True, sort_keys=sort_keys,
    )


def save_yaml(path: str | Path, data: Any, *, sort_keys: bool = False) -> None:
    """原子写入 YAML 文件，自动创建父目录"""
    p = Path(path)
    try:
        atomic_write(p, dump_yaml(data, sort_keys=sort_keys))
    except yaml.YAMLError as e:
        logger.error("序列化 YAML 失败: %s, 错误: %s", p, e)
        raise
    except OSError as e:
        logger.error("写入文件失败: %s, 错误: %s", p, e)
        raise
