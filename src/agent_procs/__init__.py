"""Agent Procs - 面向 coding agent 的进程执行引擎与 MCP 服务器。

启动、流式读取并可靠终止外部进程：任意 shell 命令、长时间运行的
CLI 工具，以及输出逐行 JSON 的模型调用子进程。

环境变量:
    AGP_KILL_GRACE: 优雅终止到强制终止的宽限期 (默认 5 秒)
    AGP_COMPAT: 兼容环境模式 (auto/on/off)
    AGP_SIGINT_MODE: SIGINT 处理模式 (cancel/exit/cancel_then_exit)

用法:
    uvx agent-procs
"""

__version__ = "0.1.0"

from .claude_code import parse_claude_code_record, run_claude_code
from .execution import ExecutionListener, ExecutionProcess, ExitInfo
from .registry import ProcessRegistry
from .streaming import CliRunOptions, StreamingCliClient
from .terminal import HostTerminal, TerminalPool

__all__ = [
    "__version__",
    "CliRunOptions",
    "ExecutionListener",
    "ExecutionProcess",
    "ExitInfo",
    "HostTerminal",
    "ProcessRegistry",
    "StreamingCliClient",
    "TerminalPool",
    "parse_claude_code_record",
    "run_claude_code",
]
