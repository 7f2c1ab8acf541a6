"""进程注册表模块。

追踪所有派生出的外部进程，提供：
- ProcessRegistry: 进程的登记、注销与（按会话分组的）终止
- 进程自然退出时自动注销
- 优雅终止 -> 宽限期 -> 强制终止 的升级策略

注册表是唯一允许对非自身持有的进程发送 OS 信号的组件。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Protocol

from .config import get_config
from .host import HostEnvironment, HostSession, Unsubscribe
from .runtime.process_tree import (
    ProcessTreeResolver,
    PsutilTreeResolver,
    process_group_of,
    resolve_tree,
    terminate_tree,
)

__all__ = ["ProcessRegistry", "ProcessHandle", "TrackedProcess"]

logger = logging.getLogger(__name__)

EXIT_POLL_INTERVAL = 0.1


class ProcessHandle(Protocol):
    """注册表所需的最小进程句柄接口（asyncio.subprocess.Process 满足）。"""

    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...


@dataclass
class TrackedProcess:
    """被追踪进程的信息。

    Attributes:
        id: 唯一进程标识符
        handle: OS 进程句柄（由注册表独占，其他组件不得回收）
        description: 诊断用描述
        session_id: 关联的上层会话 ID（仅用于查找）
        registered_at: 登记时间（仅用于诊断）
        pgid: 进程自身为组长时的进程组 ID
    """

    id: str
    handle: ProcessHandle
    description: str = ""
    session_id: str | None = None
    registered_at: float = field(default_factory=time.time)
    pgid: int | None = None

    @property
    def pid(self) -> int | None:
        return self.handle.pid

    def __repr__(self) -> str:
        elapsed = time.time() - self.registered_at
        status = "running" if self.handle.returncode is None else f"exited({self.handle.returncode})"
        return (
            f"TrackedProcess(id={self.id}, "
            f"pid={self.pid}, "
            f"session={self.session_id}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )


class ProcessRegistry:
    """被派生进程的注册表。

    管理所有正在运行的外部进程，提供：
    - 进程登记和注销（自然退出时自动注销）
    - 单个 / 按会话 / 全部终止
    - 宿主会话终止时自动清理

    线程安全：内部映射只在事件循环线程中修改，不需要加锁。

    Example:
        ```python
        registry = ProcessRegistry()

        process = await asyncio.create_subprocess_shell("sleep 100")
        registry.register(process, "proc-1", description="sleep", session_id="s1")

        # 终止某个会话下的所有进程
        await registry.kill_session_processes("s1")

        # 关闭时清理
        await registry.dispose()
        ```
    """

    def __init__(
        self,
        host: HostEnvironment | None = None,
        resolver: ProcessTreeResolver | None = None,
        grace_window: float | None = None,
    ) -> None:
        """初始化进程注册表。

        Args:
            host: 宿主环境（可选，用于订阅会话事件）
            resolver: 进程树解析器（默认基于 psutil）
            grace_window: 优雅终止到强制终止的等待时间（默认从配置读取）
        """
        self._processes: dict[str, TrackedProcess] = {}
        self._session_processes: dict[str, set[str]] = {}
        self._pids: dict[int, str] = {}
        self._watchers: dict[str, asyncio.Task] = {}
        self._kills: dict[str, asyncio.Task] = {}
        self._session_cleanups: set[asyncio.Task] = set()
        self._subscriptions: list[Unsubscribe] = []

        self._resolver = resolver or PsutilTreeResolver()
        self.grace_window = (
            grace_window if grace_window is not None else get_config().kill_grace_window
        )

        # 仅在宿主提供会话事件时订阅
        if host is not None and host.events is not None:
            try:
                self._subscriptions.append(
                    host.events.on_session_started(self._on_session_started)
                )
                self._subscriptions.append(
                    host.events.on_session_terminated(self._on_session_terminated)
                )
            except Exception as e:
                logger.debug(f"Session events unavailable: {e}")

    @staticmethod
    def generate_process_id(prefix: str, pid: int) -> str:
        """生成进程 ID，格式为 ``<prefix>-<pid>-<毫秒时间戳>``。"""
        return f"{prefix}-{pid}-{int(time.time() * 1000)}"

    def register(
        self,
        handle: ProcessHandle,
        process_id: str,
        description: str = "",
        session_id: str | None = None,
    ) -> bool:
        """登记进程，并在进程自然退出时自动注销。

        重复的 process_id 或同一 pid 已被追踪时不做任何操作。

        Args:
            handle: 进程句柄
            process_id: 唯一进程标识符（调用方负责唯一性）
            description: 诊断用描述
            session_id: 关联的上层会话 ID

        Returns:
            是否成功登记
        """
        if process_id in self._processes:
            logger.warning(f"Process {process_id} already registered, ignoring")
            return False

        pid = handle.pid
        if pid in self._pids:
            logger.warning(
                f"pid={pid} already tracked as {self._pids[pid]}, ignoring {process_id}"
            )
            return False

        tracked = TrackedProcess(
            id=process_id,
            handle=handle,
            description=description,
            session_id=session_id,
            pgid=process_group_of(pid) if pid else None,
        )
        self._processes[process_id] = tracked
        if pid:
            self._pids[pid] = process_id

        if session_id:
            self._session_processes.setdefault(session_id, set()).add(process_id)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, exit of {process_id} will not be watched")
        else:
            self._watchers[process_id] = loop.create_task(
                self._watch_exit(process_id, handle),
                name=f"exit-watcher-{process_id}",
            )

        logger.debug(f"Registered process: {tracked}")
        return True

    async def _watch_exit(self, process_id: str, handle: ProcessHandle) -> None:
        """等待进程退出后注销。

        以 returncode 和 wait() 先到者为准：后台子进程继承了 stdout 时，
        shell 已被回收但 wait() 要等管道关闭才返回。
        """
        waiter = asyncio.ensure_future(handle.wait())
        try:
            while handle.returncode is None and not waiter.done():
                await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL)
            if waiter.done():
                waiter.result()
        except Exception as e:
            logger.debug(f"Exit watcher for {process_id} failed: {e}")
            return
        finally:
            if not waiter.done():
                waiter.cancel()

        tracked = self._processes.get(process_id)
        if tracked is not None and tracked.handle is handle:
            logger.debug(f"Process exited naturally: {tracked}")
            self.unregister(process_id)

    def unregister(self, process_id: str) -> bool:
        """注销进程（幂等）。

        Args:
            process_id: 进程标识符

        Returns:
            是否成功注销（进程存在则返回 True）
        """
        tracked = self._processes.pop(process_id, None)
        if tracked is None:
            return False

        if tracked.session_id:
            members = self._session_processes.get(tracked.session_id)
            if members is not None:
                members.discard(process_id)
                if not members:
                    del self._session_processes[tracked.session_id]

        if tracked.pid and self._pids.get(tracked.pid) == process_id:
            del self._pids[tracked.pid]

        watcher = self._watchers.pop(process_id, None)
        if watcher is not None and not watcher.done() and watcher is not _current_task():
            watcher.cancel()

        logger.debug(f"Unregistered process: {tracked}")
        return True

    def get(self, process_id: str) -> TrackedProcess | None:
        """获取被追踪进程的信息，不存在则返回 None。"""
        return self._processes.get(process_id)

    async def kill_process(
        self,
        process_id: str,
        sig: int = signal.SIGTERM,
        *,
        grace_window: float | None = None,
    ) -> None:
        """终止进程及其子孙进程，完成后注销。

        优雅信号（SIGTERM/SIGINT）在宽限期后仍未退出时升级为强制信号。
        进程已退出不视为错误；未被追踪的 ID 直接忽略。
        同一 ID 的并发终止请求共享同一个终止任务。

        Args:
            process_id: 进程标识符
            sig: 首先发送的信号
            grace_window: 宽限期（秒），默认使用注册表配置
        """
        tracked = self._processes.get(process_id)
        if tracked is None:
            logger.debug(f"kill_process: {process_id} not tracked")
            return

        task = self._kills.get(process_id)
        if task is None:
            window = self.grace_window if grace_window is None else grace_window
            task = asyncio.create_task(
                self._kill(tracked, sig, window),
                name=f"kill-{process_id}",
            )
            self._kills[process_id] = task
            task.add_done_callback(lambda _: self._kills.pop(process_id, None))

        # 终止流程不受调用方取消影响
        await asyncio.shield(task)

    async def _kill(self, tracked: TrackedProcess, sig: int, grace_window: float) -> None:
        try:
            pid = tracked.pid
            if pid:
                tree = await resolve_tree(self._resolver, pid, tracked.pgid)
                escalated = await terminate_tree(tree, sig, grace_window)
                logger.info(
                    f"Killed process {tracked.id} pid={pid} "
                    f"(signal={signal.Signals(sig).name}, escalated={escalated})"
                )
        except Exception as e:
            logger.warning(f"Failed to kill process {tracked.id}: {e}")
        finally:
            self.unregister(tracked.id)

    async def kill_session_processes(self, session_id: str) -> int:
        """终止与某个会话关联的所有进程。

        各进程的终止相互独立，一个失败不会阻塞其他。

        Returns:
            发起终止的进程数量
        """
        process_ids = list(self._session_processes.get(session_id, ()))
        if not process_ids:
            return 0
        await self._kill_many(process_ids)
        logger.info(f"Killed {len(process_ids)} process(es) of session {session_id}")
        return len(process_ids)

    async def kill_all_processes(self) -> int:
        """终止所有被追踪的进程。

        Returns:
            发起终止的进程数量
        """
        process_ids = list(self._processes)
        if not process_ids:
            return 0
        await self._kill_many(process_ids)
        logger.info(f"Killed {len(process_ids)} tracked process(es)")
        return len(process_ids)

    async def _kill_many(self, process_ids: list[str]) -> None:
        results = await asyncio.gather(
            *(self.kill_process(process_id) for process_id in process_ids),
            return_exceptions=True,
        )
        for process_id, result in zip(process_ids, results):
            if isinstance(result, BaseException):
                logger.warning(f"Error killing process {process_id}: {result}")

    def tracked_processes(self) -> list[TrackedProcess]:
        """列出所有被追踪的进程（按登记时间排序）。"""
        return sorted(self._processes.values(), key=lambda p: p.registered_at)

    def session_processes(self, session_id: str) -> list[TrackedProcess]:
        """列出与某个会话关联的进程。"""
        return [
            self._processes[process_id]
            for process_id in self._session_processes.get(session_id, ())
            if process_id in self._processes
        ]

    def has_active_processes(self) -> bool:
        """是否存在仍在运行的被追踪进程。"""
        return any(p.handle.returncode is None for p in self._processes.values())

    @property
    def active_count(self) -> int:
        """仍在运行的被追踪进程数量。"""
        return sum(1 for p in self._processes.values() if p.handle.returncode is None)

    def _on_session_started(self, session: HostSession) -> None:
        logger.info(f"Session started: {session.id}")

    def _on_session_terminated(self, session: HostSession) -> None:
        logger.info(f"Session terminated: {session.id}, cleaning up processes")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running loop, cannot clean up session {session.id}")
            return
        task = loop.create_task(self.kill_session_processes(session.id))
        self._session_cleanups.add(task)
        task.add_done_callback(self._session_cleanups.discard)

    async def dispose(self) -> None:
        """终止所有进程，释放订阅并清空内部状态。可重复调用。"""
        try:
            await self.kill_all_processes()
        except Exception as e:
            logger.warning(f"Error during ProcessRegistry disposal: {e}")

        for unsubscribe in self._subscriptions:
            try:
                unsubscribe()
            except Exception as e:
                logger.debug(f"Error releasing subscription: {e}")
        self._subscriptions.clear()

        for task in [*self._watchers.values(), *self._session_cleanups]:
            if not task.done():
                task.cancel()
        self._watchers.clear()
        self._session_cleanups.clear()

        self._processes.clear()
        self._session_processes.clear()
        self._pids.clear()

    def __len__(self) -> int:
        """返回注册表中的进程数量。"""
        return len(self._processes)

    def __contains__(self, process_id: str) -> bool:
        """检查进程是否在注册表中。"""
        return process_id in self._processes


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
