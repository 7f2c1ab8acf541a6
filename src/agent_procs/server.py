"""Agent Procs MCP Server。

通过 MCP 向 agent 暴露命令执行工具：
    execute_command: 在池化终端中运行命令
    get_command_output: 获取命令的新输出
    abort_command: 终止命令及其全部子孙进程
    list_processes: 列出被追踪的进程

用法:
    uvx agent-procs
"""

from __future__ import annotations

import json
import logging
from typing import Any

import anyio
from mcp.server import Server
from mcp.types import TextContent, Tool

from .errors import AgentProcsError
from .response_formatter import (
    format_command_result,
    format_error_response,
    format_process_list,
)
from .service import CommandService
from .tool_schema import SUPPORTED_TOOLS, TOOL_DESCRIPTIONS, create_tool_schema

__all__ = ["create_server"]

logger = logging.getLogger(__name__)


def create_server(service: CommandService) -> Server:
    """创建 MCP Server 实例。

    Args:
        service: 命令服务
    """
    server = Server("agent-procs")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """列出可用工具。"""
        tools = [
            Tool(
                name=name,
                description=TOOL_DESCRIPTIONS[name],
                inputSchema=create_tool_schema(name),
            )
            for name in SUPPORTED_TOOLS
        ]
        logger.debug(f"[MCP] list_tools called, returning {len(tools)} tools")
        return tools

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """调用工具。"""
        logger.debug(
            f"[MCP] call_tool request: {name} "
            f"{json.dumps(arguments, ensure_ascii=False, default=str)[:500]}"
        )

        if name not in SUPPORTED_TOOLS:
            return format_error_response(f"Unknown tool '{name}'")

        try:
            return await _dispatch(service, name, arguments or {})

        except anyio.get_cancelled_exc_class():
            logger.info(f"Tool '{name}' cancelled")
            raise

        except (AgentProcsError, KeyError, ValueError, RuntimeError) as e:
            message = e.args[0] if isinstance(e, KeyError) and e.args else str(e)
            logger.warning(f"Tool '{name}' failed: {message}")
            return format_error_response(str(message))

        except Exception as e:
            logger.error(f"Tool '{name}' error: type={type(e).__name__}, msg={e}")
            return format_error_response(str(e))

    return server


async def _dispatch(
    service: CommandService,
    name: str,
    arguments: dict[str, Any],
) -> list[TextContent]:
    if name == "execute_command":
        wait_seconds = arguments.get("wait_seconds")
        result = await service.execute(
            command=arguments.get("command", ""),
            cwd=arguments.get("cwd", ""),
            task_id=arguments.get("task_id") or None,
            wait_seconds=float(wait_seconds) if wait_seconds is not None else None,
        )
        return format_command_result(result)

    if name == "get_command_output":
        return format_command_result(service.output(_command_id(arguments)))

    if name == "abort_command":
        return format_command_result(await service.abort(_command_id(arguments)))

    return format_process_list(service.list_processes())


def _command_id(arguments: dict[str, Any]) -> str:
    command_id = arguments.get("command_id")
    if not command_id:
        raise ValueError("command_id is required")
    return str(command_id)
