"""外部进程执行 - 构建后端统一的子进程入口

ProcessGroup 跟踪一次操作内所有在跑的子进程，
中断或 fail-fast 时可一次性终止，避免遗留孤儿构建进程。
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import Protocol

from rockforge.core.exceptions import ExecutionError, OperationCancelled

logger = logging.getLogger(__name__)

# 终止子进程后等待其退出的时间（秒）
_TERMINATE_GRACE = 5.0


@dataclass
class CommandResult:
    """命令执行结果（与 subprocess 解耦）"""

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


class CommandExecutor(Protocol):
    """命令执行器协议

    构建后端只依赖该协议，测试中可注入记录调用的假实现。
    """

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        ...


class ProcessGroup:
    """可取消的本地执行器（满足 CommandExecutor 协议）"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: set[subprocess.Popen[str]] = set()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        if self.cancelled:
            raise OperationCancelled(f"操作已取消，拒绝启动: {cmd}")
        args = shlex.split(cmd) if isinstance(cmd, str) else list(cmd)
        proc = subprocess.Popen(
            args, cwd=cwd, env=env, text=True,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE,
        )
        with self._lock:
            self._running.add(proc)
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
            raise ExecutionError(f"命令超时（{timeout}秒）: {' '.join(args)}") from None
        finally:
            with self._lock:
                self._running.discard(proc)
        if self.cancelled:
            raise OperationCancelled(f"命令被中断: {' '.join(args)}")
        return CommandResult(returncode=proc.returncode, stdout=stdout, stderr=stderr)

    def terminate_all(self) -> int:
        """标记取消并终止所有在跑的子进程，返回被终止的进程数"""
        self._cancelled.set()
        with self._lock:
            procs = list(self._running)
        for proc in procs:
            if proc.poll() is None:
                logger.warning("终止外部进程: pid=%s", proc.pid)
                proc.terminate()
        for proc in procs:
            try:
                proc.wait(timeout=_TERMINATE_GRACE)
            except subprocess.TimeoutExpired:
                proc.kill()
        return len(procs)


def run_cmd(
    cmd: str | list[str],
    *,
    cwd: str = ".",
    env: dict[str, str] | None = None,
    label: str = "cmd",
    executor: CommandExecutor | None = None,
    timeout: int | None = None,
) -> CommandResult:
    """执行命令，非零退出码抛 ExecutionError

    Args:
        cmd: 命令字符串或参数列表
        cwd: 工作目录
        env: 环境变量（不传则继承当前进程）
        label: 日志与错误信息中的标签
        executor: 执行器，默认新建一个 ProcessGroup
    """
    runner = executor or ProcessGroup()
    logger.info("  %s: %s (cwd=%s)", label, cmd, cwd)
    r = runner.execute(cmd, cwd=cwd, env=env, timeout=timeout)
    if not r.success:
        raise ExecutionError(f"{label}失败 (rc={r.returncode}): {r.stderr[:500]}")
    return r
