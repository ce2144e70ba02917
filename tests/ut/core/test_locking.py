"""安装树咨询锁"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from rockforge.core.exceptions import LockTimeoutError
from rockforge.utils.locking import acquire_file_lock


class TestFileLock:
    def test_acquire_and_release(self, tmp_path: Path) -> None:
        lock = tmp_path / "tree" / ".lock"
        with acquire_file_lock(lock, timeout=1):
            assert lock.exists()
        with acquire_file_lock(lock, timeout=1):
            pass

    def test_timeout_when_held(self, tmp_path: Path) -> None:
        lock = tmp_path / ".lock"
        held = threading.Event()
        release = threading.Event()

        def _holder() -> None:
            with acquire_file_lock(lock, timeout=1):
                held.set()
                release.wait(5)

        t = threading.Thread(target=_holder)
        t.start()
        try:
            assert held.wait(5)
            with pytest.raises(LockTimeoutError):
                with acquire_file_lock(lock, timeout=0.1):
                    pass
        finally:
            release.set()
            t.join()

    def test_invalid_timeout(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            with acquire_file_lock(tmp_path / ".lock", timeout=0):
                pass
