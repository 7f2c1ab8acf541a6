"""命令服务。

面向 agent 的门面：在池化终端中运行命令，等待有限时间后返回已有输出；
之后可按命令 ID 轮询新输出或终止命令。

Example:
    ```python
    service = CommandService(TerminalPool(registry=registry), registry)

    result = await service.execute("npm test", cwd="/repo", wait_seconds=10)
    while result.status == "running":
        await asyncio.sleep(5)
        result = service.output(result.command_id)
    ```
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
from collections import OrderedDict
from dataclasses import dataclass

from .config import get_config
from .execution import ExecutionProcess
from .registry import ProcessRegistry, TrackedProcess
from .terminal import TerminalPool

__all__ = ["CommandResult", "CommandService"]

logger = logging.getLogger(__name__)

# 保留的已结束命令数量上限
MAX_FINISHED_COMMANDS = 256


@dataclass
class CommandResult:
    """一次查询的结果。

    Attributes:
        command_id: 命令 ID
        command: 命令文本
        status: running | completed | aborted
        output: 自上次查询以来的新输出
        exit_code: 退出码（运行中或被信号终止时为 None）
        signal_name: 终止信号名
        cwd: 命令结束后终端所在目录
        terminal_id: 运行命令的终端编号
    """

    command_id: str
    command: str
    status: str
    output: str
    exit_code: int | None = None
    signal_name: str | None = None
    cwd: str = ""
    terminal_id: int | None = None


class CommandService:
    """按命令 ID 管理 ExecutionProcess。"""

    def __init__(
        self,
        pool: TerminalPool,
        registry: ProcessRegistry,
        default_wait: float | None = None,
    ) -> None:
        self.pool = pool
        self.registry = registry
        self.default_wait = default_wait if default_wait is not None else get_config().default_wait
        self._commands: OrderedDict[str, ExecutionProcess] = OrderedDict()
        self._ids = itertools.count(1)

    async def execute(
        self,
        command: str,
        cwd: str,
        task_id: str | None = None,
        wait_seconds: float | None = None,
    ) -> CommandResult:
        """启动命令并等待至多 wait_seconds 秒。

        Raises:
            ValueError: 命令为空或工作目录不存在
            SpawnError: 进程无法启动
        """
        if not command or not command.strip():
            raise ValueError("command is required")
        if not cwd or not os.path.isdir(cwd):
            raise ValueError(f"cwd is not a directory: {cwd}")

        terminal = self.pool.get_or_create(cwd, task_id)
        process = await terminal.run_command(command)

        command_id = f"cmd-{next(self._ids)}"
        self._commands[command_id] = process
        self._prune()
        logger.info(f"Started {command_id} on terminal {terminal.id}: {command!r}")

        wait = self.default_wait if wait_seconds is None else max(wait_seconds, 0.0)
        await self._wait(process, wait)
        return self._result(command_id, process)

    def output(self, command_id: str) -> CommandResult:
        """返回命令自上次查询以来的新输出。

        Raises:
            KeyError: 未知的命令 ID
        """
        return self._result(command_id, self._get(command_id))

    async def abort(self, command_id: str, wait_seconds: float | None = None) -> CommandResult:
        """终止命令，并等待其结束（至多宽限期再多一秒）。

        Raises:
            KeyError: 未知的命令 ID
        """
        process = self._get(command_id)
        process.abort()
        wait = process.grace_window + 1.0 if wait_seconds is None else wait_seconds
        await self._wait(process, wait)
        return self._result(command_id, process)

    def list_processes(self) -> list[TrackedProcess]:
        """列出注册表中仍被追踪的进程。"""
        return self.registry.tracked_processes()

    def commands(self) -> list[tuple[str, ExecutionProcess]]:
        return list(self._commands.items())

    async def close(self) -> None:
        """关闭所有终端并终止所有进程。"""
        self.pool.close()
        await self.registry.kill_all_processes()

    def _get(self, command_id: str) -> ExecutionProcess:
        try:
            return self._commands[command_id]
        except KeyError:
            raise KeyError(f"Unknown command id: {command_id}") from None

    @staticmethod
    async def _wait(process: ExecutionProcess, timeout: float) -> None:
        if timeout <= 0 or process.is_completed:
            return
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _result(command_id: str, process: ExecutionProcess) -> CommandResult:
        if process.is_completed:
            output = process.drain_output()
            info = process.exit_info
            status = "aborted" if info is not None and info.aborted else "completed"
            return CommandResult(
                command_id=command_id,
                command=process.command,
                status=status,
                output=output,
                exit_code=info.exit_code if info else None,
                signal_name=info.signal_name if info else None,
                cwd=process.terminal.get_current_working_directory(),
                terminal_id=process.terminal.id,
            )
        return CommandResult(
            command_id=command_id,
            command=process.command,
            status="running",
            output=process.get_unretrieved_output(),
            cwd=process.terminal.get_current_working_directory(),
            terminal_id=process.terminal.id,
        )

    def _prune(self) -> None:
        finished = [cid for cid, p in self._commands.items() if p.is_completed]
        while len(finished) > MAX_FINISHED_COMMANDS:
            del self._commands[finished.pop(0)]
