"""SignalManager 模块测试。

测试信号管理器的基本功能：
- 信号处理策略
- 配置支持
- 双击退出
"""

from __future__ import annotations

import asyncio
import os
import sys
from unittest import mock

import pytest

from agent_procs.config import SigintMode
from agent_procs.registry import ProcessRegistry
from agent_procs.signal_manager import SignalManager


def make_registry(active: int = 0) -> mock.MagicMock:
    """构造一个模拟注册表，含 active 个被追踪进程。"""
    registry = mock.MagicMock(spec=ProcessRegistry)
    registry.has_active_processes.return_value = active > 0
    registry.__len__.return_value = active
    registry.kill_all_processes = mock.AsyncMock(return_value=active)
    return registry


def attach_loop(manager: SignalManager, loop: asyncio.AbstractEventLoop | None = None) -> None:
    manager._shutdown_event = asyncio.Event()
    manager._loop = loop or mock.MagicMock()


class TestSigintMode:
    """SigintMode 枚举测试。"""

    def test_from_string_valid(self):
        """有效字符串解析。"""
        assert SigintMode.from_string("cancel") == SigintMode.CANCEL
        assert SigintMode.from_string("exit") == SigintMode.EXIT
        assert SigintMode.from_string("cancel_then_exit") == SigintMode.CANCEL_THEN_EXIT

    def test_from_string_case_insensitive(self):
        """大小写不敏感。"""
        assert SigintMode.from_string("Exit") == SigintMode.EXIT
        assert SigintMode.from_string("Cancel_Then_Exit") == SigintMode.CANCEL_THEN_EXIT

    def test_from_string_invalid(self):
        """无效字符串返回默认值 CANCEL。"""
        assert SigintMode.from_string("invalid") == SigintMode.CANCEL
        assert SigintMode.from_string("") == SigintMode.CANCEL


class TestSignalManagerInit:
    """SignalManager 初始化测试。"""

    def test_init_with_defaults(self):
        """使用默认配置初始化。"""
        registry = make_registry()
        manager = SignalManager(registry)

        assert manager.registry is registry
        assert manager.sigint_mode == SigintMode.CANCEL
        assert manager.double_tap_window == 1.0

    def test_init_from_environment(self):
        with mock.patch.dict(
            os.environ,
            {"AGP_SIGINT_MODE": "cancel_then_exit", "AGP_SIGINT_DOUBLE_TAP_WINDOW": "2.5"},
        ):
            from agent_procs.config import reload_config

            reload_config()
            manager = SignalManager(make_registry())

        assert manager.sigint_mode == SigintMode.CANCEL_THEN_EXIT
        assert manager.double_tap_window == 2.5

    def test_init_with_custom_values(self):
        """使用自定义值初始化。"""
        manager = SignalManager(
            make_registry(),
            sigint_mode=SigintMode.EXIT,
            double_tap_window=2.0,
        )

        assert manager.sigint_mode == SigintMode.EXIT
        assert manager.double_tap_window == 2.0


class TestSignalManagerSigintCancel:
    """SIGINT CANCEL 模式测试。"""

    @pytest.mark.asyncio
    async def test_sigint_with_active_processes_kills_all(self):
        """有被追踪进程时 SIGINT 终止它们，服务继续运行。"""
        registry = make_registry(active=2)
        manager = SignalManager(registry, sigint_mode=SigintMode.CANCEL)
        attach_loop(manager, asyncio.get_running_loop())

        manager._handle_sigint()
        await manager.wait_for_kills()

        registry.kill_all_processes.assert_awaited_once()
        assert manager.is_shutdown_requested is False

    def test_sigint_without_active_processes_shuts_down(self):
        """没有被追踪进程时 SIGINT 请求关闭。"""
        registry = make_registry()
        manager = SignalManager(registry, sigint_mode=SigintMode.CANCEL)
        attach_loop(manager)

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        registry.kill_all_processes.assert_not_called()


class TestSignalManagerSigintExit:
    """SIGINT EXIT 模式测试。"""

    def test_sigint_always_shuts_down(self):
        """EXIT 模式下 SIGINT 始终请求关闭。"""
        registry = make_registry(active=1)
        manager = SignalManager(registry, sigint_mode=SigintMode.EXIT)
        attach_loop(manager)

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        # 进程由关闭流程统一清理
        registry.kill_all_processes.assert_not_called()


class TestSignalManagerSigintCancelThenExit:
    """SIGINT CANCEL_THEN_EXIT 模式测试。"""

    @pytest.mark.asyncio
    async def test_first_kills_second_exits(self):
        """第一次终止进程，窗口内第二次强制退出。"""
        registry = make_registry(active=1)
        manager = SignalManager(
            registry,
            sigint_mode=SigintMode.CANCEL_THEN_EXIT,
            double_tap_window=1.0,
        )
        attach_loop(manager, asyncio.get_running_loop())

        manager._handle_sigint()
        await manager.wait_for_kills()

        registry.kill_all_processes.assert_awaited_once()
        assert manager.is_shutdown_requested is True
        assert manager.is_force_exit is False
        assert not manager._shutdown_event.is_set()

        manager._handle_sigint()
        await asyncio.sleep(0)

        assert manager.is_force_exit is True
        assert manager._shutdown_event.is_set()

    def test_without_active_processes_shuts_down(self):
        manager = SignalManager(make_registry(), sigint_mode=SigintMode.CANCEL_THEN_EXIT)
        attach_loop(manager)

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True


class TestSignalManagerDoubleTap:
    """双击退出测试。"""

    def test_double_tap_forces_exit(self):
        """双击 SIGINT 只设置强制退出标志，实际退出由主循环在清理后执行。"""
        manager = SignalManager(
            make_registry(),
            sigint_mode=SigintMode.CANCEL_THEN_EXIT,
            double_tap_window=1.0,
        )
        attach_loop(manager)
        manager._shutdown_requested = True

        manager._handle_sigint()
        manager._handle_sigint()

        assert manager.is_force_exit is True
        manager._loop.call_soon_threadsafe.assert_called()

    def test_slow_second_tap_is_not_double(self):
        manager = SignalManager(
            make_registry(),
            sigint_mode=SigintMode.CANCEL_THEN_EXIT,
            double_tap_window=0.5,
        )
        attach_loop(manager)
        manager._shutdown_requested = True
        manager._last_sigint_time = 0.0

        manager._handle_sigint()

        assert manager.is_force_exit is False


class TestSignalManagerSigterm:
    """SIGTERM 测试。"""

    @pytest.mark.asyncio
    async def test_sigterm_kills_all_and_shuts_down(self):
        registry = make_registry(active=3)
        manager = SignalManager(registry)
        attach_loop(manager, asyncio.get_running_loop())

        manager._handle_sigterm()
        await manager.wait_for_kills()

        registry.kill_all_processes.assert_awaited_once()
        assert manager.is_shutdown_requested is True
        await asyncio.wait_for(manager.wait_for_shutdown(), timeout=1)

    def test_sigterm_without_processes(self):
        registry = make_registry()
        manager = SignalManager(registry)
        attach_loop(manager)

        manager._handle_sigterm()

        assert manager.is_shutdown_requested is True
        registry.kill_all_processes.assert_not_called()


class TestSignalManagerCallbacks:
    """回调测试。"""

    def test_on_shutdown_callback(self):
        callback = mock.MagicMock()
        manager = SignalManager(make_registry(), sigint_mode=SigintMode.EXIT, on_shutdown=callback)
        attach_loop(manager)

        manager._handle_sigint()

        callback.assert_called_once()

    def test_callback_error_contained(self):
        callback = mock.MagicMock(side_effect=RuntimeError("boom"))
        manager = SignalManager(make_registry(), sigint_mode=SigintMode.EXIT, on_shutdown=callback)
        attach_loop(manager)

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True


class TestSignalManagerGracefulShutdown:
    """程序化关闭测试。"""

    @pytest.mark.asyncio
    async def test_request_graceful_shutdown(self):
        registry = make_registry(active=1)
        manager = SignalManager(registry)
        attach_loop(manager, asyncio.get_running_loop())

        manager.request_graceful_shutdown()
        await manager.wait_for_kills()

        registry.kill_all_processes.assert_awaited_once()
        assert manager.is_shutdown_requested is True


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal handling")
class TestSignalManagerStartStop:
    """启动/停止测试（仅 POSIX）。"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        manager = SignalManager(make_registry())

        await manager.start()
        assert manager._running is True
        assert manager._loop is not None

        await manager.stop()
        assert manager._running is False

    @pytest.mark.asyncio
    async def test_stop_waits_for_kills(self):
        registry = make_registry(active=1)
        finished = asyncio.Event()

        async def slow_kill() -> int:
            await asyncio.sleep(0.1)
            finished.set()
            return 1

        registry.kill_all_processes = mock.AsyncMock(side_effect=slow_kill)
        manager = SignalManager(registry)
        await manager.start()

        manager._handle_sigint()
        await manager.stop()

        assert finished.is_set()
