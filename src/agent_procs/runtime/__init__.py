"""Runtime module for process tree termination and execution policy.

This module provides tree-wide signalling with graceful-then-forceful
escalation, and the environment-dependent policy used by streaming CLI runs.
"""

from __future__ import annotations

from .policy import COMPAT_POLICY, STANDARD_POLICY, ExecutionPolicy, detect_policy
from .process_tree import (
    ProcessTree,
    ProcessTreeResolver,
    PsutilTreeResolver,
    resolve_tree,
    terminate_tree,
)

__all__ = [
    "COMPAT_POLICY",
    "STANDARD_POLICY",
    "ExecutionPolicy",
    "ProcessTree",
    "ProcessTreeResolver",
    "PsutilTreeResolver",
    "detect_policy",
    "resolve_tree",
    "terminate_tree",
]
