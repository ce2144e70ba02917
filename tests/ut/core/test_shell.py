"""shell.py：run_cmd 与 ProcessGroup"""

from __future__ import annotations

import os
import threading
import time

import pytest

from rockforge.core.exceptions import ExecutionError, OperationCancelled
from rockforge.utils.shell import ProcessGroup, run_cmd


class TestRunCmd:
    def test_success(self, tmp_path) -> None:
        r = run_cmd("echo hello", cwd=str(tmp_path), label="test")
        assert r.returncode == 0
        assert "hello" in r.stdout

    def test_failure_raises(self, tmp_path) -> None:
        with pytest.raises(ExecutionError, match="cmd失败"):
            run_cmd("false", cwd=str(tmp_path))

    def test_custom_label_in_error(self, tmp_path) -> None:
        with pytest.raises(ExecutionError, match="mybuild失败"):
            run_cmd(["false"], cwd=str(tmp_path), label="mybuild")

    def test_env_passed(self, tmp_path) -> None:
        env = {**os.environ, "MY_TEST_VAR": "42"}
        r = run_cmd("env", cwd=str(tmp_path), env=env, label="env_test")
        assert "MY_TEST_VAR=42" in r.stdout

    def test_timeout(self, tmp_path) -> None:
        with pytest.raises(ExecutionError, match="超时"):
            run_cmd("sleep 5", cwd=str(tmp_path), timeout=1)


class TestProcessGroup:
    def test_refuses_after_cancel(self, tmp_path) -> None:
        group = ProcessGroup()
        assert group.terminate_all() == 0
        assert group.cancelled
        with pytest.raises(OperationCancelled):
            group.execute("echo hi", cwd=str(tmp_path))

    def test_terminate_running(self, tmp_path) -> None:
        group = ProcessGroup()
        errors: list[BaseException] = []

        def _run() -> None:
            try:
                group.execute("sleep 30", cwd=str(tmp_path))
            except OperationCancelled as e:
                errors.append(e)

        t = threading.Thread(target=_run)
        t.start()
        deadline = time.monotonic() + 5
        while not group._running and time.monotonic() < deadline:
            time.sleep(0.01)
        assert group.terminate_all() == 1
        t.join(timeout=10)
        assert len(errors) == 1
