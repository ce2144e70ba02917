"""源码归档的打包与解包

打包输出确定性 tar.gz（成员排序、mtime/uid 归零），
同一目录内容总是得到相同的完整性摘要。
"""

from __future__ import annotations

import gzip
import io
import logging
import tarfile
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


def pack_directory(src: Path) -> bytes:
    """把目录打包为确定性 tar.gz 字节串"""
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for path in sorted(p for p in src.rglob("*")):
            rel = path.relative_to(src).as_posix()
            info = tar.gettarinfo(str(path), arcname=rel)
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            if path.is_file():
                with open(path, "rb") as f:
                    tar.addfile(info, f)
            else:
                tar.addfile(info)
    out = io.BytesIO()
    with gzip.GzipFile(fileobj=out, mode="wb", mtime=0) as gz:
        gz.write(raw.getvalue())
    return out.getvalue()


def _is_safe_member(member: tarfile.TarInfo) -> bool:
    p = PurePosixPath(member.name)
    if p.is_absolute() or ".." in p.parts:
        return False
    return not (member.issym() or member.islnk() or member.isdev())


def unpack_archive(data: bytes, dest: Path) -> Path:
    """解包 tar.gz 到 dest，拒绝绝对路径、路径穿越与链接成员

    若归档只有一个顶层目录，返回该目录，否则返回 dest。
    """
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        members = tar.getmembers()
        unsafe = [m.name for m in members if not _is_safe_member(m)]
        if unsafe:
            raise ValueError(f"归档包含不安全的成员: {unsafe[:5]}")
        for member in members:
            tar.extract(member, str(dest))
    tops = {PurePosixPath(m.name).parts[0] for m in members if m.name not in ("", ".")}
    if len(tops) == 1:
        only = dest / next(iter(tops))
        if only.is_dir():
            return only
    return dest
