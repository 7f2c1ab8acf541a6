"""宿主终端与终端池。

- HostTerminal: 一个进程宿主，记录其当前工作目录、忙碌状态和所属任务
- TerminalPool: 按 *当前* 工作目录复用空闲终端，找不到时再新建

当前工作目录的判定顺序：
1. 宿主提供的实时查询（shell_cwd 回调）
2. 上一条命令结束后记录下的目录
3. 终端创建时的初始目录
"""

from __future__ import annotations

import itertools
import logging
import os
from collections.abc import Mapping
from typing import Callable

from .execution import ExecutionListener, ExecutionProcess
from .host import HostEnvironment
from .registry import ProcessRegistry

__all__ = ["HostTerminal", "TerminalPool", "paths_equal"]

logger = logging.getLogger(__name__)

_terminal_ids = itertools.count(1)


def paths_equal(a: str | os.PathLike, b: str | os.PathLike) -> bool:
    """比较两个路径是否指向同一目录（解析符号链接，Windows 下忽略大小写）。"""
    return os.path.normcase(os.path.realpath(a)) == os.path.normcase(os.path.realpath(b))


class HostTerminal:
    """一个可运行命令的宿主终端。

    同一时刻只运行一条命令。busy 标志由 ExecutionProcess 在完成回调全部
    触发之后才清除。

    Attributes:
        id: 终端编号（进程内唯一）
        initial_cwd: 创建时的工作目录
        task_id: 当前绑定的任务 ID（可为空）
        busy: 是否正在运行命令
        closed: 是否已关闭
        process: 最近一次运行的 ExecutionProcess
    """

    def __init__(
        self,
        initial_cwd: str,
        task_id: str | None = None,
        *,
        registry: ProcessRegistry | None = None,
        host: HostEnvironment | None = None,
        shell_cwd: Callable[[], str | None] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.id = next(_terminal_ids)
        self.initial_cwd = os.fspath(initial_cwd)
        self.task_id = task_id
        self.registry = registry
        self.host = host
        self.busy = False
        self.closed = False
        self.process: ExecutionProcess | None = None
        self._shell_cwd = shell_cwd
        self._tracked_cwd: str | None = None
        self._env = dict(env or {})

    def get_current_working_directory(self) -> str:
        """返回终端当前的工作目录。"""
        if self._shell_cwd is not None:
            try:
                cwd = self._shell_cwd()
            except Exception as e:
                logger.debug(f"Terminal {self.id}: shell cwd query failed: {e}")
            else:
                if cwd:
                    return os.fspath(cwd)
        return self._tracked_cwd or self.initial_cwd

    def set_current_working_directory(self, path: str) -> None:
        """记录命令结束后的工作目录。"""
        if self._tracked_cwd != path:
            logger.debug(f"Terminal {self.id}: cwd -> {path}")
        self._tracked_cwd = path

    @property
    def is_idle(self) -> bool:
        return not self.busy and not self.closed

    async def run_command(
        self,
        command: str,
        listener: ExecutionListener | None = None,
    ) -> ExecutionProcess:
        """在本终端启动命令，进程启动后立即返回。

        Args:
            command: shell 命令
            listener: 推送消费者（可选）

        Returns:
            正在运行的 ExecutionProcess

        Raises:
            RuntimeError: 终端已关闭或正忙
            SpawnError: 进程无法启动
        """
        if self.closed:
            raise RuntimeError(f"Terminal {self.id} is closed")
        if self.busy:
            raise RuntimeError(f"Terminal {self.id} is busy")

        self.busy = True
        process = ExecutionProcess(self, registry=self.registry, host=self.host, env=self._env)
        if listener is not None:
            process.listen(listener)
        self.process = process
        # 启动失败时 ExecutionProcess 会清除 busy 后再抛出
        await process.start(command)
        return process

    def close(self) -> None:
        """关闭终端，终止仍在运行的命令。"""
        if self.closed:
            return
        self.closed = True
        if self.process is not None and self.process.is_running:
            self.process.abort()

    def __repr__(self) -> str:
        return (
            f"HostTerminal(id={self.id}, "
            f"cwd={self.get_current_working_directory()}, "
            f"task={self.task_id}, "
            f"busy={self.busy})"
        )


class TerminalPool:
    """终端池。

    get_or_create() 的查找顺序：
    1. 绑定到同一 task_id、空闲且当前目录匹配的终端
    2. 任意空闲且当前目录匹配的终端（重新绑定到 task_id）
    3. 新建终端并绑定到 task_id

    Example:
        ```python
        pool = TerminalPool(registry=registry)
        terminal = pool.get_or_create("/repo", task_id="task-1")
        process = await terminal.run_command("make test")
        ```
    """

    def __init__(
        self,
        registry: ProcessRegistry | None = None,
        host: HostEnvironment | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.registry = registry
        self.host = host
        self._env = dict(env or {})
        self._terminals: list[HostTerminal] = []

    @property
    def terminals(self) -> list[HostTerminal]:
        """所有未关闭的终端。"""
        return [t for t in self._terminals if not t.closed]

    def busy_terminals(self) -> list[HostTerminal]:
        return [t for t in self._terminals if t.busy and not t.closed]

    def get_or_create(
        self,
        working_directory: str | os.PathLike,
        task_id: str | None = None,
        shell_cwd: Callable[[], str | None] | None = None,
    ) -> HostTerminal:
        """返回一个当前目录为 working_directory 的空闲终端。

        Args:
            working_directory: 需要的工作目录
            task_id: 请求方任务 ID
            shell_cwd: 新建终端时使用的宿主实时目录查询

        Returns:
            可立即运行命令的终端
        """
        cwd = os.fspath(working_directory)
        candidates = [
            t
            for t in self._terminals
            if t.is_idle and paths_equal(t.get_current_working_directory(), cwd)
        ]

        if task_id is not None:
            for terminal in candidates:
                if terminal.task_id == task_id:
                    logger.debug(f"Reusing task terminal {terminal}")
                    return terminal

        if candidates:
            terminal = candidates[0]
            terminal.task_id = task_id
            logger.debug(f"Reusing idle terminal {terminal}")
            return terminal

        terminal = HostTerminal(
            cwd,
            task_id,
            registry=self.registry,
            host=self.host,
            shell_cwd=shell_cwd,
            env=self._env,
        )
        self._terminals.append(terminal)
        logger.info(f"Created terminal {terminal.id} for {cwd} (task={task_id})")
        return terminal

    def release_task(self, task_id: str) -> int:
        """解除任务与其终端的绑定，返回解除的数量。"""
        released = 0
        for terminal in self._terminals:
            if terminal.task_id == task_id:
                terminal.task_id = None
                released += 1
        return released

    def remove(self, terminal: HostTerminal) -> None:
        """关闭并移出终端（不存在时忽略）。"""
        terminal.close()
        if terminal in self._terminals:
            self._terminals.remove(terminal)

    def close(self) -> None:
        """关闭所有终端。"""
        for terminal in self._terminals:
            terminal.close()
        self._terminals.clear()

    def __len__(self) -> int:
        return len(self.terminals)
