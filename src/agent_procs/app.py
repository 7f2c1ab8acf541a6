"""Agent Procs 应用入口。

组装注册表、终端池、命令服务和 MCP server，并负责退出时的清理：
无论是 stdin 关闭、SIGTERM 还是连按 Ctrl+C，所有被追踪的进程树都会
在进程退出前被终止。
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Mapping

from mcp.server import Server
from mcp.server.stdio import stdio_server

from .config import get_config
from .registry import ProcessRegistry
from .server import create_server
from .service import CommandService
from .signal_manager import SignalManager
from .terminal import TerminalPool

__all__ = ["run_server", "main", "configure_logging"]

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# 128 + SIGINT
FORCE_EXIT_CODE = 130


async def _serve_stdio(server: Server) -> None:
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )
    logger.debug("stdio transport closed")


def _close_stdin() -> None:
    """关闭 stdin，打断 stdio_server 的阻塞读取。"""
    try:
        sys.stdin.close()
    except (OSError, ValueError) as e:
        logger.debug(f"Error closing stdin: {e}")


async def run_server() -> None:
    """运行 MCP server 直到 stdin 关闭或收到退出信号。

    两个并发任务：
    - serve: 通过 stdio 处理 MCP 请求
    - watcher: 等待 SignalManager 的退出事件，然后取消 serve
    """
    logger.info(f"Starting agent-procs MCP server: {get_config()}")

    registry = ProcessRegistry()
    service = CommandService(TerminalPool(registry=registry), registry)
    signals = SignalManager(registry=registry, on_shutdown=_close_stdin)
    server = create_server(service)

    await signals.start()
    serve = asyncio.create_task(_serve_stdio(server), name="mcp-server")

    async def _watch() -> None:
        await signals.wait_for_shutdown()
        logger.info("Shutdown requested, stopping MCP server")
        serve.cancel()

    watcher = asyncio.create_task(_watch(), name="shutdown-watcher")

    try:
        await serve
    except asyncio.CancelledError:
        logger.info("MCP server stopped by signal")
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
        await _cleanup(signals, service, registry)

    if signals.is_force_exit:
        logger.warning(f"Forced exit, exit code {FORCE_EXIT_CODE}")
        sys.exit(FORCE_EXIT_CODE)


async def _cleanup(
    signals: SignalManager,
    service: CommandService,
    registry: ProcessRegistry,
) -> None:
    """终止所有仍在运行的命令，不留孤儿进程。"""
    await signals.stop()
    remaining = registry.active_count
    if remaining:
        logger.info(f"Killing {remaining} tracked process(es) before exit")
    try:
        await asyncio.shield(service.close())
    except Exception as e:
        logger.warning(f"Error closing command service: {e}")
    await registry.dispose()
    logger.info("Cleanup completed")


class JsonSerializingFormatter(logging.Formatter):
    """把日志参数中的 dict / 对象序列化为 JSON，便于调试文件检索。"""

    def format(self, record: logging.LogRecord) -> str:
        # LogRecord 把单个 dict 参数直接存为 args；"%(key)s" 格式保持原样
        if isinstance(record.args, Mapping) and "%(" not in str(record.msg):
            record.args = (_jsonable(dict(record.args)),)
        elif isinstance(record.args, tuple) and record.args:
            record.args = tuple(_jsonable(arg) for arg in record.args)
        return super().format(record)


def _jsonable(arg: object) -> object:
    if isinstance(arg, (str, int, float, bool)) or arg is None:
        return arg
    try:
        if isinstance(arg, dict):
            return json.dumps(arg, ensure_ascii=False, default=str)
        if hasattr(arg, "__dict__"):
            return json.dumps(vars(arg), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        pass
    return arg


def configure_logging() -> None:
    """配置日志。

    stdout 是 MCP 的 JSON-RPC 通道，日志只写 stderr，或在 AGP_LOG_DEBUG
    开启时写入临时目录下的文件。
    """
    config = get_config()

    if config.log_debug and config.log_file:
        handler: logging.Handler = logging.FileHandler(config.log_file, encoding="utf-8")
        handler.setFormatter(JsonSerializingFormatter(LOG_FORMAT))
        level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        level = logging.INFO

    # 第三方库只输出 WARNING 以上
    logging.basicConfig(level=logging.WARNING, handlers=[handler])
    logging.getLogger("agent_procs").setLevel(level)
    if config.log_file and config.log_debug:
        logger.info(f"Debug log: {config.log_file}")


def main() -> None:
    """主入口点。"""
    configure_logging()
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
