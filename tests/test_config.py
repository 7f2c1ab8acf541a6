"""Config 模块测试。

测试 AGP_* 环境变量解析和配置管理。
"""

from __future__ import annotations

import os
from unittest import mock

from agent_procs.config import (
    CompatMode,
    Config,
    SigintMode,
    get_config,
    load_config,
    reload_config,
)


class TestDefaults:
    """测试默认值。"""

    def test_defaults(self):
        """未设置任何变量时使用默认值。"""
        config = load_config()
        assert config.log_debug is False
        assert config.log_file is None
        assert config.kill_grace_window == 5.0
        assert config.emit_interval == 0.5
        assert config.compat_mode is CompatMode.AUTO
        assert config.cli_timeout is None
        assert config.sigint_mode is SigintMode.CANCEL
        assert config.sigint_double_tap_window == 1.0
        assert config.default_wait == 30.0


class TestKillGrace:
    """测试宽限期解析。"""

    def test_custom_value(self):
        with mock.patch.dict(os.environ, {"AGP_KILL_GRACE": "2.5"}):
            assert load_config().kill_grace_window == 2.5

    def test_clamped_low(self):
        """过小的值被限制到 0.1 秒。"""
        with mock.patch.dict(os.environ, {"AGP_KILL_GRACE": "0"}):
            assert load_config().kill_grace_window == 0.1

    def test_clamped_high(self):
        """过大的值被限制到 60 秒。"""
        with mock.patch.dict(os.environ, {"AGP_KILL_GRACE": "3600"}):
            assert load_config().kill_grace_window == 60.0

    def test_invalid_uses_default(self):
        with mock.patch.dict(os.environ, {"AGP_KILL_GRACE": "soon"}):
            assert load_config().kill_grace_window == 5.0


class TestEmitInterval:
    """测试推送间隔解析。"""

    def test_custom_value(self):
        with mock.patch.dict(os.environ, {"AGP_EMIT_INTERVAL": "0.1"}):
            assert load_config().emit_interval == 0.1

    def test_clamped(self):
        with mock.patch.dict(os.environ, {"AGP_EMIT_INTERVAL": "0.001"}):
            assert load_config().emit_interval == 0.05


class TestCompatMode:
    """测试兼容环境模式解析。"""

    def test_on(self):
        for value in ("on", "true", "1", "YES"):
            with mock.patch.dict(os.environ, {"AGP_COMPAT": value}):
                assert load_config().compat_mode is CompatMode.ON

    def test_off(self):
        for value in ("off", "false", "0", "no"):
            with mock.patch.dict(os.environ, {"AGP_COMPAT": value}):
                assert load_config().compat_mode is CompatMode.OFF

    def test_unknown_is_auto(self):
        with mock.patch.dict(os.environ, {"AGP_COMPAT": "maybe"}):
            assert load_config().compat_mode is CompatMode.AUTO


class TestCliTimeout:
    """测试流式 CLI 运行时限覆盖。"""

    def test_override(self):
        with mock.patch.dict(os.environ, {"AGP_CLI_TIMEOUT": "120"}):
            assert load_config().cli_timeout == 120.0

    def test_non_positive_ignored(self):
        with mock.patch.dict(os.environ, {"AGP_CLI_TIMEOUT": "-5"}):
            assert load_config().cli_timeout is None

    def test_invalid_ignored(self):
        with mock.patch.dict(os.environ, {"AGP_CLI_TIMEOUT": "ten"}):
            assert load_config().cli_timeout is None


class TestSigintMode:
    """测试 SIGINT 模式解析。"""

    def test_modes(self):
        for value, expected in (
            ("cancel", SigintMode.CANCEL),
            ("exit", SigintMode.EXIT),
            ("cancel_then_exit", SigintMode.CANCEL_THEN_EXIT),
            ("EXIT", SigintMode.EXIT),
        ):
            with mock.patch.dict(os.environ, {"AGP_SIGINT_MODE": value}):
                assert load_config().sigint_mode is expected

    def test_invalid_defaults_to_cancel(self):
        with mock.patch.dict(os.environ, {"AGP_SIGINT_MODE": "explode"}):
            assert load_config().sigint_mode is SigintMode.CANCEL


class TestLogDebug:
    """测试日志调试模式。"""

    def test_log_file_generated(self, tmp_path):
        """开启调试模式时生成临时目录下的日志文件路径。"""
        with mock.patch.dict(os.environ, {"AGP_LOG_DEBUG": "true", "TMPDIR": str(tmp_path)}):
            with mock.patch("tempfile.gettempdir", return_value=str(tmp_path)):
                config = load_config()
        assert config.log_debug is True
        assert config.log_file is not None
        assert "agent-procs" in config.log_file
        assert config.log_file.endswith(".log")


class TestGlobalConfig:
    """测试全局配置实例。"""

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_reload_config(self):
        first = get_config()
        with mock.patch.dict(os.environ, {"AGP_DEFAULT_WAIT": "5"}):
            second = reload_config()
        assert second is not first
        assert second.default_wait == 5.0
        assert get_config() is second

    def test_repr(self):
        text = repr(Config())
        assert "kill_grace_window=5.0" in text
        assert "compat_mode=auto" in text
