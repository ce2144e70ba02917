"""咨询式文件锁

同一进程内用线程互斥量排队，跨进程用 fcntl.flock，
两者叠加保证对同一安装树的写入不会交错。
"""

from __future__ import annotations

import fcntl
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from rockforge.core.exceptions import LockTimeoutError

_THREAD_MUTEXES: dict[str, threading.Lock] = {}
_REGISTRY_GUARD = threading.Lock()

DEFAULT_POLL_INTERVAL = 0.05


def _thread_mutex(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _REGISTRY_GUARD:
        return _THREAD_MUTEXES.setdefault(key, threading.Lock())


@contextmanager
def acquire_file_lock(
    lock_path: Path,
    timeout: float = 30.0,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> Iterator[None]:
    """获取 lock_path 上的排他锁，超时抛 LockTimeoutError

    锁文件本身保留在磁盘上，只有持有期间被 flock。
    """
    if timeout <= 0:
        raise ValueError(f"timeout 必须为正数 (实际 {timeout})")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout

    mutex = _thread_mutex(lock_path)
    if not mutex.acquire(timeout=timeout):
        raise LockTimeoutError(f"{timeout}s 内未能获得锁: {lock_path}")

    fh = open(lock_path, "a+")
    acquired = False
    try:
        while True:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                acquired = True
                break
            except OSError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"{timeout}s 内未能获得锁（被其他进程占用）: {lock_path}"
                    ) from None
                time.sleep(poll_interval)
        yield
    finally:
        try:
            if acquired:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
            mutex.release()
