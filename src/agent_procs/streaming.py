"""流式 CLI 客户端。

运行一个长时间存活的 CLI 子进程，其 stdout 为逐行 JSON（JSONL），
增量解码后逐条产出。

处理要点：
- 一行解析失败时暂存为片段（PartialFrame），与下一行拼接后重试
- 流结束时，以指定前缀开头的残留片段作为原始字符串产出（截断输出的兜底）
- 运行时限、宽限期和存活探测间隔来自 ExecutionPolicy（WSL 等环境更保守）
- 无论正常结束、出错还是被消费方关闭，都会清理子进程
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import psutil

from .errors import CliProcessError, CliTimeoutError, SpawnError
from .registry import ProcessRegistry
from .runtime.policy import ExecutionPolicy, detect_policy
from .runtime.process_tree import (
    IS_WINDOWS,
    ProcessTreeResolver,
    PsutilTreeResolver,
    process_group_of,
    resolve_tree,
    terminate_tree,
)

__all__ = [
    "CliRunOptions",
    "DEFAULT_SALVAGE_MARKERS",
    "INCOMPLETE",
    "JsonLineDecoder",
    "StreamingCliClient",
]

logger = logging.getLogger(__name__)

# 单行上限：assistant 消息可能非常长
STREAM_LIMIT = 64 * 1024 * 1024

# stderr 环形缓冲上限，超出时丢弃最旧的数据
STDERR_MAX_SIZE = 4 * 1024 * 1024

DEFAULT_SALVAGE_MARKERS: tuple[str, ...] = ('{"type":"assistant"',)

# feed() 的返回值：行尚未构成完整记录（JSON null 是合法记录）
INCOMPLETE = object()


@dataclass
class CliRunOptions:
    """一次流式运行的参数。

    Attributes:
        argv: 可执行文件及参数
        cwd: 工作目录（None 为当前目录）
        env: 叠加到当前环境变量之上的变量
        name: 用于日志和错误信息的名称
        session_id: 关联的上层会话 ID
    """

    argv: Sequence[str]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    name: str = "CLI"
    session_id: str | None = None


class JsonLineDecoder:
    """逐行 JSON 解码器。

    解析失败的行保存为片段；下一行到来时先与片段拼接再解析，
    成功则清空片段。
    """

    def __init__(self, salvage_markers: Sequence[str] = DEFAULT_SALVAGE_MARKERS) -> None:
        self.salvage_markers = tuple(salvage_markers)
        self.partial: str | None = None

    def feed(self, line: str) -> Any:
        """解码一行，无法解析时返回 INCOMPLETE。"""
        if self.partial is not None:
            self.partial += line
            data = self._try_parse(self.partial)
            if data is INCOMPLETE:
                return INCOMPLETE
            self.partial = None
            return data

        data = self._try_parse(line)
        if data is INCOMPLETE:
            self.partial = line
        return data

    def finish(self) -> str | None:
        """流结束时调用：返回可挽救的片段，其余片段丢弃。"""
        partial, self.partial = self.partial, None
        if partial is None:
            return None
        if partial.startswith(self.salvage_markers):
            logger.debug(f"Salvaging truncated record ({len(partial)} chars)")
            return partial
        logger.debug(f"Dropping undecodable tail: {partial[:100]}")
        return None

    @staticmethod
    def _try_parse(text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.debug(f"Error parsing chunk ({len(text)} chars): {e}")
            return INCOMPLETE


class StreamingCliClient:
    """流式 CLI 客户端。

    每次 run() 返回一个独立的异步生成器，对应一个子进程。

    Example:
        client = StreamingCliClient(registry=registry)
        options = CliRunOptions(argv=["claude", "-p", "..."], name="Claude Code")
        async for record in client.run(options):
            if isinstance(record, str):
                ...  # 截断的 assistant 消息
            else:
                ...  # 完整的 JSON 记录
    """

    def __init__(
        self,
        policy: ExecutionPolicy | None = None,
        registry: ProcessRegistry | None = None,
        salvage_markers: Sequence[str] = DEFAULT_SALVAGE_MARKERS,
        resolver: ProcessTreeResolver | None = None,
    ) -> None:
        """初始化客户端。

        Args:
            policy: 执行策略（默认按环境探测）
            registry: 进程注册表（可选，登记后由其负责终止）
            salvage_markers: 流结束时可挽救片段的前缀
            resolver: 进程树解析器（未登记时直接终止使用）
        """
        self.policy = policy or detect_policy()
        self.registry = registry
        self.salvage_markers = tuple(salvage_markers)
        self._resolver = resolver or PsutilTreeResolver()

    async def run(self, options: CliRunOptions) -> AsyncIterator[dict[str, Any] | str]:
        """运行 CLI 并逐条产出记录。

        Yields:
            解码后的 JSON 记录；流结束时可能额外产出一条被截断的原始字符串

        Raises:
            SpawnError: 进程无法启动
            CliTimeoutError: 超过运行时限
            CliProcessError: 输出完整后以非零退出码结束
        """
        process = await self._spawn(options)
        process_id = self._register(process, options)

        heartbeat_task: asyncio.Task | None = None
        if self.policy.heartbeat_interval:
            heartbeat_task = asyncio.create_task(
                self._heartbeat(process.pid, self.policy.heartbeat_interval),
                name=f"heartbeat-{process.pid}",
            )

        stderr_chunks: list[bytes] = []
        stderr_task = asyncio.create_task(self._drain_stderr(process, stderr_chunks))

        decoder = JsonLineDecoder(self.salvage_markers)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.policy.timeout

        async def bounded(awaitable: Any) -> Any:
            remaining = max(deadline - loop.time(), 0)
            try:
                return await asyncio.wait_for(awaitable, timeout=remaining)
            except asyncio.TimeoutError:
                logger.warning(f"{options.name} timed out after {self.policy.timeout:.0f}s")
                raise CliTimeoutError(options.name, self.policy.timeout) from None

        try:
            assert process.stdout is not None
            while True:
                line = await bounded(process.stdout.readline())
                if not line:
                    break

                text = line.decode("utf-8", errors="replace").rstrip("\r\n")
                if not text.strip():
                    continue

                record = decoder.feed(text)
                if record is not INCOMPLETE:
                    yield record

            # 截断的最后一条 assistant 消息好过什么都没有
            salvaged = decoder.finish()
            if salvaged is not None:
                yield salvaged

            await bounded(asyncio.shield(stderr_task))
            returncode = await bounded(process.wait())

            if returncode != 0:
                stderr = _join_stderr(stderr_chunks).strip()
                logger.warning(f"{options.name} exited with code {returncode}")
                raise CliProcessError(options.name, returncode, stderr)

        finally:
            if heartbeat_task is not None:
                heartbeat_task.cancel()

            if not stderr_task.done():
                stderr_task.cancel()
                try:
                    await stderr_task
                except asyncio.CancelledError:
                    pass

            await self._teardown(process, process_id)

    async def _spawn(self, options: CliRunOptions) -> asyncio.subprocess.Process:
        argv = list(options.argv)
        if not argv:
            raise SpawnError("", "empty argv")

        subprocess_kwargs: dict[str, Any] = {}
        if IS_WINDOWS:
            subprocess_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            subprocess_kwargs["start_new_session"] = True

        logger.debug(f"Spawning {options.name}: {argv[0]} ({len(argv) - 1} args) cwd={options.cwd}")
        try:
            # stdin=DEVNULL: 不能继承 MCP server 的 stdin（JSON-RPC 通道）
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.cwd,
                env={**os.environ, **options.env},
                limit=STREAM_LIMIT,
                **subprocess_kwargs,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start {options.name}: {e}")
            raise SpawnError(argv[0], str(e)) from e

        logger.debug(f"{options.name} started: pid={process.pid}")
        return process

    def _register(self, process: asyncio.subprocess.Process, options: CliRunOptions) -> str | None:
        if self.registry is None:
            return None
        process_id = self.registry.generate_process_id("cli", process.pid)
        try:
            if self.registry.register(
                process,
                process_id,
                description=f"{options.name}: {options.argv[0]}",
                session_id=options.session_id,
            ):
                return process_id
        except Exception as e:
            logger.warning(f"Failed to register {options.name} process: {e}")
        return None

    @staticmethod
    async def _drain_stderr(process: asyncio.subprocess.Process, chunks: list[bytes]) -> None:
        """并发读取 stderr，防止管道写满阻塞子进程。"""
        if process.stderr is None:
            return
        total = 0
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            chunks.append(chunk)
            total += len(chunk)
            while total > STDERR_MAX_SIZE and chunks:
                total -= len(chunks.pop(0))

    async def _heartbeat(self, pid: int, interval: float) -> None:
        """定期探测进程是否存活，进程消失后停止。"""
        while True:
            await asyncio.sleep(interval)
            if not _probe(pid):
                logger.info(f"Heartbeat: pid={pid} is gone, stopping probe")
                return
            logger.debug(f"Heartbeat: pid={pid} alive")

    async def _teardown(self, process: asyncio.subprocess.Process, process_id: str | None) -> None:
        """终止仍在运行的子进程，受 shield 保护。"""
        if process.returncode is not None:
            if process_id is not None and self.registry is not None:
                self.registry.unregister(process_id)
            return

        task = asyncio.create_task(self._terminate(process, process_id))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                logger.debug(f"Double cancel during teardown pid={process.pid}")
            raise

    async def _terminate(self, process: asyncio.subprocess.Process, process_id: str | None) -> None:
        grace_window = self.policy.grace_window
        try:
            if (
                self.registry is not None
                and process_id is not None
                and process_id in self.registry
            ):
                await self.registry.kill_process(
                    process_id, signal.SIGTERM, grace_window=grace_window
                )
            else:
                tree = await resolve_tree(
                    self._resolver, process.pid, process_group_of(process.pid)
                )
                await terminate_tree(tree, signal.SIGTERM, grace_window)
        except Exception as e:
            logger.warning(f"Failed to terminate pid={process.pid}: {e}")


def _probe(pid: int) -> bool:
    if IS_WINDOWS:
        return psutil.pid_exists(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _join_stderr(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")
