"""Tool Schema 定义。

包含工具描述、参数 schema 和 schema 创建函数。
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "SUPPORTED_TOOLS",
    "TOOL_DESCRIPTIONS",
    "create_tool_schema",
]

# 支持的工具列表（用于校验）
SUPPORTED_TOOLS = ("execute_command", "get_command_output", "abort_command", "list_processes")

# 工具描述
TOOL_DESCRIPTIONS = {
    "execute_command": """Run a shell command in a pooled terminal.

BEHAVIOR:
- Reuses an idle terminal whose current directory is `cwd`, else opens a new one.
- Waits up to `wait_seconds` for the command to finish, then returns what it has.
- Long-running commands keep running: poll with get_command_output.

OUTPUT:
- stdout and stderr are merged in the order they were written.
- Only complete lines are returned while the command is running.

BEST PRACTICES:
- Use the same `task_id` for related commands so they share a terminal.
- Use `cd` freely: the terminal remembers the directory for the next command.""",

    "get_command_output": """Fetch new output of a command started by execute_command.

Returns only the output produced since the previous call, plus the status
(running / completed / aborted) and exit code once finished.""",

    "abort_command": """Terminate a running command and every process it spawned.

Sends SIGTERM to the whole process tree, escalating to SIGKILL if anything
survives the grace window. Returns the final output.""",

    "list_processes": """List every process currently tracked by the server.""",
}

COMMAND_ID_PROPERTY = {
    "type": "string",
    "description": "The command_id returned by execute_command.",
}

EXECUTE_PROPERTIES = {
    # === 必填参数 ===
    "command": {
        "type": "string",
        "description": "Shell command line (run by /bin/sh on POSIX, cmd.exe on Windows).",
    },
    "cwd": {
        "type": "string",
        "description": "Absolute path of the working directory.",
    },
    # === 可选参数 ===
    "task_id": {
        "type": "string",
        "default": "",
        "description": "Caller task identifier. Terminals bound to this task are preferred.",
    },
    "wait_seconds": {
        "type": "number",
        "minimum": 0,
        "description": (
            "Seconds to wait for completion before returning. "
            "0 returns immediately. Default: server setting (AGP_DEFAULT_WAIT)."
        ),
    },
}


def create_tool_schema(name: str) -> dict[str, Any]:
    """创建工具的输入 schema。

    Args:
        name: 工具名称

    Returns:
        JSON Schema 对象

    Raises:
        ValueError: 未知的工具名称
    """
    if name == "execute_command":
        return {
            "type": "object",
            "properties": dict(EXECUTE_PROPERTIES),
            "required": ["command", "cwd"],
        }
    if name in ("get_command_output", "abort_command"):
        return {
            "type": "object",
            "properties": {"command_id": COMMAND_ID_PROPERTY},
            "required": ["command_id"],
        }
    if name == "list_processes":
        return {"type": "object", "properties": {}}
    raise ValueError(f"Unknown tool: {name}")
