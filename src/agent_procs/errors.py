"""异常定义。

进程执行引擎的错误分类：
- SpawnError: 子进程无法启动（解释器不存在、工作目录无效等），同步抛给调用方
- CliProcessError: 流式 CLI 完整输出后以非零退出码结束
- CliTimeoutError: 流式 CLI 超过运行时限

运行期失败（非零退出码、被信号终止）不抛异常，而是通过 ExitInfo 返回。
"""

from __future__ import annotations

__all__ = [
    "AgentProcsError",
    "SpawnError",
    "CliProcessError",
    "CliTimeoutError",
]


class AgentProcsError(Exception):
    """所有 agent-procs 异常的基类。"""


class SpawnError(AgentProcsError):
    """子进程启动失败。

    Attributes:
        command: 尝试启动的命令
    """

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Failed to spawn {command!r}: {reason}")
        self.command = command
        self.reason = reason


class CliProcessError(AgentProcsError):
    """流式 CLI 进程以非零退出码结束。

    Attributes:
        exit_code: 进程退出码
        stderr: 捕获的 stderr 文本（已去除首尾空白）
    """

    def __init__(self, name: str, exit_code: int, stderr: str = "") -> None:
        message = f"{name} process exited with code {exit_code}."
        if stderr:
            message += f" Error output: {stderr}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class CliTimeoutError(AgentProcsError):
    """流式 CLI 超过运行时限。"""

    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"{name} process timed out after {timeout:.0f}s")
        self.timeout = timeout
