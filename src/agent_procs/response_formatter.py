"""MCP 响应格式化器。

使用 XML-wrapped 文本格式，对 LLM 友好。

格式说明:
    - <command>: 命令 ID、状态、退出码等元信息
    - <output>: 自上次查询以来的新输出
    - <processes>: 被追踪进程列表
    - <error>: 错误信息
"""

from __future__ import annotations

import time
from html import escape
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from mcp.types import TextContent

    from .registry import TrackedProcess
    from .service import CommandResult

__all__ = [
    "format_command_result",
    "format_error_response",
    "format_process_list",
]


def _text(value: str) -> list["TextContent"]:
    from mcp.types import TextContent

    return [TextContent(type="text", text=value)]


def format_command_result(result: "CommandResult") -> list["TextContent"]:
    """格式化 execute_command / get_command_output / abort_command 的结果。"""
    parts = ["<response>"]
    parts.append(
        f'  <command id="{escape(result.command_id)}" status="{result.status}"'
        f' terminal="{result.terminal_id}">'
    )
    parts.append(f"    <text>{escape(result.command, quote=False)}</text>")
    parts.append(f"    <cwd>{escape(result.cwd, quote=False)}</cwd>")
    if result.exit_code is not None:
        parts.append(f"    <exit_code>{result.exit_code}</exit_code>")
    if result.signal_name:
        parts.append(f"    <signal>{result.signal_name}</signal>")
    parts.append("  </command>")

    if result.output:
        parts.append(f"  <output>{escape(result.output, quote=False)}</output>")
    else:
        parts.append("  <output/>")

    if result.status == "running":
        parts.append(
            "  <hint>Command is still running. Call get_command_output with this "
            "command id to fetch more output, or abort_command to stop it.</hint>"
        )

    parts.append("</response>")
    return _text("\n".join(parts))


def format_process_list(processes: Iterable["TrackedProcess"]) -> list["TextContent"]:
    """格式化被追踪进程列表。"""
    now = time.time()
    parts = ["<processes>"]
    for process in processes:
        status = "running" if process.handle.returncode is None else "exited"
        parts.append(
            f'  <process id="{escape(process.id)}" pid="{process.pid}" '
            f'status="{status}" elapsed="{now - process.registered_at:.1f}s"'
            + (f' session="{escape(process.session_id)}"' if process.session_id else "")
            + f">{escape(process.description, quote=False)}</process>"
        )
    parts.append("</processes>")
    return _text("\n".join(parts))


def format_error_response(error: str) -> list["TextContent"]:
    """统一的错误响应格式化函数。

    确保所有错误都以 <response><error>...</error></response> 格式返回。
    """
    return _text(f"<response>\n  <error>{escape(error, quote=False)}</error>\n</response>")
