"""Claude Code 调用测试。

测试命令行/环境变量构建、run_claude_code() 的记录转发和 stream-json 记录模型。
"""

from __future__ import annotations

import json

import pytest

from agent_procs.claude_code import (
    CLAUDE_CODE_NAME,
    DISALLOWED_TOOLS,
    AssistantRecord,
    ClaudeCodeRecord,
    ResultRecord,
    SystemRecord,
    build_claude_code_argv,
    build_claude_code_env,
    parse_claude_code_record,
    run_claude_code,
)
from agent_procs.runtime.policy import COMPAT_POLICY, STANDARD_POLICY, ExecutionPolicy
from agent_procs.streaming import CliRunOptions


class FakeClient:
    """记录 run() 参数并回放预设记录的客户端。"""

    def __init__(self, records: list, policy: ExecutionPolicy = STANDARD_POLICY):
        self.policy = policy
        self.records = records
        self.options: CliRunOptions | None = None
        self.closed = False

    async def run(self, options: CliRunOptions):
        self.options = options
        try:
            for record in self.records:
                yield record
        finally:
            self.closed = True


MESSAGES = [{"role": "user", "content": "你好"}]


class TestBuildArgv:
    """测试命令行构建。"""

    def test_basic(self):
        argv = build_claude_code_argv("be brief", MESSAGES)
        assert argv[0] == "claude"
        assert argv[1] == "-p"
        assert json.loads(argv[2]) == MESSAGES
        assert "你好" in argv[2]
        assert argv[argv.index("--system-prompt") + 1] == "be brief"
        assert "--verbose" in argv
        assert argv[argv.index("--output-format") + 1] == "stream-json"
        assert argv[argv.index("--max-turns") + 1] == "1"
        assert "--model" not in argv

    def test_disallowed_tools(self):
        argv = build_claude_code_argv("", MESSAGES)
        tools = argv[argv.index("--disallowedTools") + 1].split(",")
        assert tools == list(DISALLOWED_TOOLS)
        assert "Bash" in tools
        assert len(tools) == 16

    def test_model_and_path(self):
        argv = build_claude_code_argv(
            "", MESSAGES, claude_path="/opt/bin/claude", model_id="claude-sonnet"
        )
        assert argv[0] == "/opt/bin/claude"
        assert argv[-2:] == ["--model", "claude-sonnet"]


class TestBuildEnv:
    """测试环境变量构建。"""

    def test_standard(self):
        env = build_claude_code_env(False, environ={})
        assert env == {"CLAUDE_CODE_MAX_OUTPUT_TOKENS": "64000"}

    def test_compat(self):
        env = build_claude_code_env(True, environ={})
        assert env["WSLENV"] == "CLAUDE_CODE_MAX_OUTPUT_TOKENS/u"
        assert env["LC_ALL"] == "C.UTF-8"
        assert env["LANG"] == "C.UTF-8"
        assert env["WSLPATH_DISABLE"] == "1"

    def test_user_max_tokens_kept(self):
        env = build_claude_code_env(False, environ={"CLAUDE_CODE_MAX_OUTPUT_TOKENS": "8000"})
        assert env["CLAUDE_CODE_MAX_OUTPUT_TOKENS"] == "8000"


class TestRunClaudeCode:
    """测试 run_claude_code()。"""

    @pytest.mark.asyncio
    async def test_forwards_records(self, tmp_path):
        records = [{"type": "system", "subtype": "init"}, '{"type":"assistant","mess']
        client = FakeClient(records)

        received = [
            r
            async for r in run_claude_code(
                "sp", MESSAGES, model_id="m1", cwd=str(tmp_path), client=client
            )
        ]

        assert received == records
        assert client.options is not None
        assert client.options.name == CLAUDE_CODE_NAME
        assert client.options.cwd == str(tmp_path)
        assert client.options.argv[-2:] == ["--model", "m1"]
        assert "WSLENV" not in client.options.env

    @pytest.mark.asyncio
    async def test_compat_policy_sets_env(self):
        client = FakeClient([], policy=COMPAT_POLICY)
        assert [r async for r in run_claude_code("sp", MESSAGES, client=client)] == []
        assert client.options.env["WSLPATH_DISABLE"] == "1"

    @pytest.mark.asyncio
    async def test_early_exit_closes_stream(self):
        client = FakeClient([{"type": "system"}, {"type": "assistant"}, {"type": "result"}])
        stream = run_claude_code("sp", MESSAGES, client=client)

        first = await stream.__anext__()
        await stream.aclose()

        assert first == {"type": "system"}
        assert client.closed is True


class TestRecordModels:
    """测试记录解析。"""

    def test_system(self):
        record = parse_claude_code_record(
            {"type": "system", "subtype": "init", "session_id": "s1", "model": "m", "tools": ["A"]}
        )
        assert isinstance(record, SystemRecord)
        assert record.session_id == "s1"
        assert record.tools == ["A"]

    def test_assistant_text(self):
        record = parse_claude_code_record(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "thinking", "thinking": "..."},
                        {"type": "text", "text": "Hello, "},
                        {"type": "text", "text": "world"},
                    ]
                },
                "session_id": "s1",
            }
        )
        assert isinstance(record, AssistantRecord)
        assert record.text == "Hello, world"

    def test_result(self):
        record = parse_claude_code_record(
            {"type": "result", "subtype": "success", "is_error": False, "result": "done", "num_turns": 1}
        )
        assert isinstance(record, ResultRecord)
        assert record.result == "done"
        # 未知字段保留
        assert record.model_extra == {"num_turns": 1}

    def test_unknown_type(self):
        record = parse_claude_code_record({"type": "user", "message": {}})
        assert type(record) is ClaudeCodeRecord
        assert record.type == "user"

    def test_malformed_falls_back(self):
        """结构不符的记录退化为基类而不抛出。"""
        record = parse_claude_code_record({"type": "assistant", "message": "oops"})
        assert type(record) is ClaudeCodeRecord
        assert record.type == "assistant"

    def test_string_passthrough(self):
        assert parse_claude_code_record('{"type":"assistant"') == '{"type":"assistant"'


def test_exported_from_package():
    import agent_procs

    assert agent_procs.run_claude_code is run_claude_code
    assert agent_procs.parse_claude_code_record is parse_claude_code_record
