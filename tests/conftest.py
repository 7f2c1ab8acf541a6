"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FAKE_CLI = Path(__file__).parent / "fixtures" / "fake_cli.py"


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """每个测试使用干净的 AGP_* 环境和全新的全局配置。"""
    from agent_procs import config

    for key in list(os.environ):
        if key.startswith("AGP_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config, "_config", None)
    yield
    monkeypatch.setattr(config, "_config", None)


@pytest.fixture
def fake_cli_argv():
    """构造运行 fake_cli.py 的命令行。"""

    def _argv(*args: str) -> list[str]:
        return [sys.executable, str(FAKE_CLI), *args]

    return _argv
