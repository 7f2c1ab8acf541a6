"""信号管理模块。

服务进程本身收到的 OS 信号在这里转换为对被追踪进程树的操作。
子进程都运行在各自的会话/进程组中，终端的 Ctrl+C 打不到它们，
只能由服务统一转发。

| 信号    | 模式              | 有被追踪进程              | 无被追踪进程 |
|---------|-------------------|---------------------------|--------------|
| SIGINT  | cancel            | 终止全部进程树，服务继续  | 退出         |
| SIGINT  | cancel_then_exit  | 终止全部，窗口内再按退出  | 退出         |
| SIGINT  | exit              | 退出（清理阶段再终止）    | 退出         |
| SIGTERM | -                 | 终止全部并退出            | 退出         |

配置: AGP_SIGINT_MODE, AGP_SIGINT_DOUBLE_TAP_WINDOW
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import SigintMode, get_config
from .registry import ProcessRegistry

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)

_POSIX = sys.platform != "win32"


class SignalManager:
    """把 SIGINT / SIGTERM 转发给 ProcessRegistry。

    Example:
        ```python
        manager = SignalManager(registry, on_shutdown=close_stdin)
        await manager.start()
        try:
            await manager.wait_for_shutdown()
        finally:
            await manager.stop()
        if manager.is_force_exit:
            sys.exit(130)
        ```
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Args:
            registry: 被转发信号的进程注册表
            sigint_mode: SIGINT 模式，None 时读取 AGP_SIGINT_MODE
            double_tap_window: 连按两次 SIGINT 视为强制退出的窗口（秒）
            on_shutdown: 请求退出时同步调用（例如关闭 stdin 打断读取）
        """
        config = get_config()
        self.registry = registry
        self.sigint_mode = config.sigint_mode if sigint_mode is None else sigint_mode
        self.double_tap_window = (
            config.sigint_double_tap_window if double_tap_window is None else double_tap_window
        )
        self._on_shutdown = on_shutdown

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._previous_handler = None
        self._running = False

        self._last_sigint_time = 0.0
        self._shutdown_requested = False
        self._force_exit = False
        self._kill_tasks: set[asyncio.Task] = set()

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """连按 SIGINT 后为 True，由调用方在清理完成后以 130 退出。"""
        return self._force_exit

    # =========================================================================
    # 安装 / 卸载
    # =========================================================================

    async def start(self) -> None:
        """在当前事件循环上安装处理器。"""
        if self._running:
            logger.warning("SignalManager already running")
            return
        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._install()
        self._running = True
        logger.debug(
            f"Signal handlers installed (mode={self.sigint_mode.value}, "
            f"double_tap_window={self.double_tap_window}s)"
        )

    async def stop(self) -> None:
        """卸载处理器，并等待信号触发的终止全部结束。"""
        if not self._running:
            return
        self._running = False
        try:
            self._uninstall()
        except (OSError, RuntimeError, ValueError) as e:
            logger.debug(f"Error removing signal handlers: {e}")
        await self.wait_for_kills()

    def _install(self) -> None:
        assert self._loop is not None
        if _POSIX:
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            return
        # Windows: 没有 add_signal_handler，处理器在主线程里被调用，转回事件循环
        loop = self._loop
        self._previous_handler = signal.signal(
            signal.SIGINT,
            lambda signum, frame: loop.call_soon_threadsafe(self._handle_sigint),
        )

    def _uninstall(self) -> None:
        if _POSIX:
            if self._loop is not None:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
        elif self._previous_handler is not None:
            signal.signal(signal.SIGINT, self._previous_handler)

    # =========================================================================
    # 等待
    # =========================================================================

    async def wait_for_shutdown(self) -> None:
        if self._shutdown_event is not None:
            await self._shutdown_event.wait()

    async def wait_for_kills(self) -> None:
        if self._kill_tasks:
            await asyncio.gather(*self._kill_tasks, return_exceptions=True)

    # =========================================================================
    # 信号处理
    # =========================================================================

    def _handle_sigint(self) -> None:
        now = time.monotonic()
        double_tap = now - self._last_sigint_time < self.double_tap_window
        self._last_sigint_time = now

        if double_tap and self._shutdown_requested:
            logger.warning("SIGINT pressed twice, forcing exit")
            self._force_exit = True
            self._kill_tracked()
            self._request_shutdown()
            return

        if self.sigint_mode is SigintMode.EXIT:
            logger.info("SIGINT (mode=exit): shutting down")
            self._request_shutdown()
            return

        count = self._kill_tracked()
        if count == 0:
            logger.info(f"SIGINT (mode={self.sigint_mode.value}) with nothing running: shutting down")
            self._request_shutdown()
        elif self.sigint_mode is SigintMode.CANCEL_THEN_EXIT:
            # 只标记，真正退出等第二次 SIGINT
            self._shutdown_requested = True
            logger.info(
                f"SIGINT: killing {count} process tree(s). "
                f"Press Ctrl+C again within {self.double_tap_window}s to exit."
            )
        else:
            logger.info(f"SIGINT: killing {count} process tree(s)")

    def _handle_sigterm(self) -> None:
        count = self._kill_tracked()
        logger.info(f"SIGTERM: killing {count} process tree(s) and shutting down")
        self._request_shutdown()

    def request_graceful_shutdown(self) -> None:
        """不经信号请求退出（与 SIGTERM 相同）。"""
        logger.info("Shutdown requested programmatically")
        self._handle_sigterm()

    def _kill_tracked(self) -> int:
        """在事件循环上发起 kill_all_processes()，返回当时被追踪的进程数。"""
        if self._loop is None or not self.registry.has_active_processes():
            return 0
        count = len(self.registry)
        task = self._loop.create_task(self.registry.kill_all_processes())
        self._kill_tasks.add(task)
        task.add_done_callback(self._kill_tasks.discard)
        return count

    def _request_shutdown(self) -> None:
        self._shutdown_requested = True
        if self._on_shutdown is not None:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")
        if self._loop is not None and self._shutdown_event is not None:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)
