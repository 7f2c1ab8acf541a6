"""Claude Code CLI 调用。

通过 StreamingCliClient 以 stream-json 模式运行 claude，每条 JSON 记录
原样产出，流末尾被截断的 assistant 消息以原始字符串产出。

命令格式:
    claude \
      -p "{messages json}" \
      --system-prompt "{system_prompt}" \
      --verbose \
      --output-format stream-json \
      --disallowedTools {内置工具列表} \
      --max-turns 1 \
      [--model {model}]
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import aclosing
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .streaming import CliRunOptions, StreamingCliClient

__all__ = [
    "AssistantRecord",
    "CLAUDE_CODE_NAME",
    "ClaudeCodeRecord",
    "DISALLOWED_TOOLS",
    "ResultRecord",
    "SystemRecord",
    "build_claude_code_argv",
    "build_claude_code_env",
    "parse_claude_code_record",
    "run_claude_code",
]

logger = logging.getLogger(__name__)

CLAUDE_CODE_NAME = "Claude Code"

# 禁用内置工具：只要文本输出，工具调用由上层自行处理
DISALLOWED_TOOLS: tuple[str, ...] = (
    "Task",
    "Bash",
    "Glob",
    "Grep",
    "LS",
    "exit_plan_mode",
    "Read",
    "Edit",
    "MultiEdit",
    "Write",
    "NotebookRead",
    "NotebookEdit",
    "WebFetch",
    "TodoRead",
    "TodoWrite",
    "WebSearch",
)

DEFAULT_MAX_OUTPUT_TOKENS = "64000"

# 兼容环境（WSL）下的额外变量
COMPAT_ENV: dict[str, str] = {
    "WSLENV": "CLAUDE_CODE_MAX_OUTPUT_TOKENS/u",
    "LC_ALL": "C.UTF-8",
    "LANG": "C.UTF-8",
    "WSLPATH_DISABLE": "1",
}


def build_claude_code_argv(
    system_prompt: str,
    messages: Sequence[Mapping[str, Any]],
    *,
    claude_path: str | None = None,
    model_id: str | None = None,
) -> list[str]:
    """构建 claude 命令行。

    Args:
        system_prompt: 系统提示词
        messages: 对话消息列表，序列化为 JSON 后作为 -p 参数
        claude_path: claude 可执行文件路径，默认 "claude"
        model_id: 模型（可选）

    Returns:
        命令行参数列表
    """
    cmd = [claude_path or "claude"]
    cmd.extend(["-p", json.dumps(list(messages), ensure_ascii=False)])
    cmd.extend(["--system-prompt", system_prompt])

    # stream-json 在 -p 模式下需要 --verbose
    cmd.append("--verbose")
    cmd.extend(["--output-format", "stream-json"])

    cmd.extend(["--disallowedTools", ",".join(DISALLOWED_TOOLS)])

    # 递归调用由上层负责
    cmd.extend(["--max-turns", "1"])

    if model_id:
        cmd.extend(["--model", model_id])

    return cmd


def build_claude_code_env(
    compat: bool,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """构建叠加到当前环境之上的变量。

    用户已设置 CLAUDE_CODE_MAX_OUTPUT_TOKENS 时保留其值。
    """
    environ = os.environ if environ is None else environ
    env: dict[str, str] = dict(COMPAT_ENV) if compat else {}
    env["CLAUDE_CODE_MAX_OUTPUT_TOKENS"] = (
        environ.get("CLAUDE_CODE_MAX_OUTPUT_TOKENS") or DEFAULT_MAX_OUTPUT_TOKENS
    )
    return env


async def run_claude_code(
    system_prompt: str,
    messages: Sequence[Mapping[str, Any]],
    *,
    claude_path: str | None = None,
    model_id: str | None = None,
    cwd: str | None = None,
    client: StreamingCliClient | None = None,
) -> AsyncIterator[dict[str, Any] | str]:
    """运行 Claude Code 并逐条产出 stream-json 记录。

    Raises:
        SpawnError: claude 无法启动
        CliTimeoutError: 超过运行时限
        CliProcessError: 以非零退出码结束
    """
    client = client or StreamingCliClient()
    options = CliRunOptions(
        argv=build_claude_code_argv(
            system_prompt, messages, claude_path=claude_path, model_id=model_id
        ),
        cwd=cwd,
        env=build_claude_code_env(client.policy.compat),
        name=CLAUDE_CODE_NAME,
    )
    async with aclosing(client.run(options)) as records:
        async for record in records:
            yield record


# =============================================================================
# stream-json 记录模型
# =============================================================================


class ClaudeCodeRecord(BaseModel):
    """stream-json 记录基类，未知字段保留在模型上。"""

    model_config = ConfigDict(extra="allow")

    type: str
    subtype: str | None = None
    session_id: str | None = None


class ContentBlock(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    text: str | None = None


class AssistantMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str | None = None
    content: list[ContentBlock] = Field(default_factory=list)
    usage: dict[str, Any] | None = None


class SystemRecord(ClaudeCodeRecord):
    """system/init：会话初始化。"""

    type: Literal["system"] = "system"
    model: str | None = None
    cwd: str | None = None
    tools: list[str] = Field(default_factory=list)


class AssistantRecord(ClaudeCodeRecord):
    """assistant：一条助手消息，content[] 可包含 text / thinking / tool_use。"""

    type: Literal["assistant"] = "assistant"
    message: AssistantMessage

    @property
    def text(self) -> str:
        return "".join(
            block.text or "" for block in self.message.content if block.type == "text"
        )


class ResultRecord(ClaudeCodeRecord):
    """result：会话结束，包含统计信息。"""

    type: Literal["result"] = "result"
    is_error: bool = False
    result: str | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None
    usage: dict[str, Any] | None = None


_RECORD_TYPES: dict[str, type[ClaudeCodeRecord]] = {
    "system": SystemRecord,
    "assistant": AssistantRecord,
    "result": ResultRecord,
}


def parse_claude_code_record(record: dict[str, Any] | str) -> ClaudeCodeRecord | str:
    """把 run_claude_code() 产出的记录解析为模型。

    被截断的原始字符串原样返回；结构不符的记录退化为 ClaudeCodeRecord。
    """
    if isinstance(record, str):
        return record

    kind = str(record.get("type") or "unknown")
    model = _RECORD_TYPES.get(kind, ClaudeCodeRecord)
    try:
        return model.model_validate(record)
    except ValidationError as e:
        logger.debug(f"Unexpected {kind} record shape: {e}")
        return ClaudeCodeRecord.model_construct(**{**record, "type": kind})
