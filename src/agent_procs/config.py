"""AGP 环境变量配置管理。

环境变量:
    AGP_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    AGP_KILL_GRACE: 优雅终止后升级为强制终止前的等待时间（秒）
        - 默认 5.0 秒，限制在 0.1-60 秒

    AGP_EMIT_INTERVAL: 命令输出推送的最小间隔（秒）
        - 默认 0.5 秒，限制在 0.05-10 秒

    AGP_COMPAT: 兼容环境模式（WSL 等信号不可靠的环境）
        - auto = 自动探测 (默认)
        - on = 强制开启
        - off = 强制关闭

    AGP_CLI_TIMEOUT: 流式 CLI 运行时限（秒）
        - 未设置时由环境探测决定 (标准 600 秒，兼容环境 300 秒)

    AGP_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - cancel = 终止所有被追踪的进程（没有则退出）(默认)
        - exit = 直接退出进程
        - cancel_then_exit = 先终止进程，第二次才退出

    AGP_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒

    AGP_DEFAULT_WAIT: execute_command 工具等待命令完成的默认时间（秒）
        - 默认 30 秒
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "CompatMode", "SigintMode", "load_config", "get_config", "reload_config"]


class SigintMode(Enum):
    """SIGINT 处理模式。

    - CANCEL: 终止被追踪的进程，不退出（如果没有被追踪的进程则退出）
    - EXIT: 直接退出进程（传统行为）
    - CANCEL_THEN_EXIT: 先终止进程，第二次 SIGINT 才退出
    """

    CANCEL = "cancel"
    EXIT = "exit"
    CANCEL_THEN_EXIT = "cancel_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式，无效值返回 CANCEL。"""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL


class CompatMode(Enum):
    """兼容环境模式。"""

    AUTO = "auto"
    ON = "on"
    OFF = "off"

    @classmethod
    def from_string(cls, value: str) -> "CompatMode":
        value = value.lower().strip()
        if value in ("on", "true", "1", "yes"):
            return cls.ON
        if value in ("off", "false", "0", "no"):
            return cls.OFF
        return cls.AUTO


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(
    value: str | None,
    default: float,
    lower: float,
    upper: float,
) -> float:
    """解析浮点数环境变量，并限制在 [lower, upper] 范围内。"""
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return max(lower, min(parsed, upper))


def _parse_optional_float(value: str | None) -> float | None:
    """解析可选的正浮点数，无效或非正值返回 None。"""
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


@dataclass
class Config:
    """AGP 配置。

    Attributes:
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        kill_grace_window: 优雅终止到强制终止的等待时间（秒）
        emit_interval: 输出推送的最小间隔（秒）
        compat_mode: 兼容环境模式
        cli_timeout: 流式 CLI 运行时限覆盖值（None = 按环境探测）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击退出窗口时间（秒）
        default_wait: execute_command 默认等待时间（秒）
    """

    log_debug: bool = False
    log_file: str | None = None
    kill_grace_window: float = 5.0
    emit_interval: float = 0.5
    compat_mode: CompatMode = CompatMode.AUTO
    cli_timeout: float | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = 1.0
    default_wait: float = 30.0

    def __repr__(self) -> str:
        return (
            f"Config(log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"kill_grace_window={self.kill_grace_window}, "
            f"emit_interval={self.emit_interval}, "
            f"compat_mode={self.compat_mode.value}, "
            f"cli_timeout={self.cli_timeout}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window}, "
            f"default_wait={self.default_wait})"
        )


def _generate_log_file_path() -> str:
    """生成临时目录下带时间戳的日志文件路径。"""
    log_dir = Path(tempfile.gettempdir()) / "agent-procs"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"agp_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("AGP_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        log_debug=log_debug,
        log_file=log_file,
        kill_grace_window=_parse_float(os.environ.get("AGP_KILL_GRACE"), 5.0, 0.1, 60.0),
        emit_interval=_parse_float(os.environ.get("AGP_EMIT_INTERVAL"), 0.5, 0.05, 10.0),
        compat_mode=CompatMode.from_string(os.environ.get("AGP_COMPAT", "auto")),
        cli_timeout=_parse_optional_float(os.environ.get("AGP_CLI_TIMEOUT")),
        sigint_mode=SigintMode.from_string(os.environ.get("AGP_SIGINT_MODE", "cancel")),
        sigint_double_tap_window=_parse_float(
            os.environ.get("AGP_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
        default_wait=_parse_float(os.environ.get("AGP_DEFAULT_WAIT"), 30.0, 0.0, 3600.0),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
