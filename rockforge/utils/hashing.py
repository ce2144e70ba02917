"""内容哈希 - 锁文件中的完整性摘要

摘要格式: ``sha256-<hex>``。
"""

from __future__ import annotations

import hashlib
from pathlib import Path

ALGORITHM = "sha256"
_CHUNK = 64 * 1024


def integrity_of_bytes(data: bytes) -> str:
    return f"{ALGORITHM}-{hashlib.sha256(data).hexdigest()}"


def integrity_of_file(path: Path) -> str:
    """流式计算文件摘要，避免大包一次性读入内存"""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            sha256.update(chunk)
    return f"{ALGORITHM}-{sha256.hexdigest()}"
