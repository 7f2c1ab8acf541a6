"""Environment-dependent execution policy.

Some environments (WSL in particular) hang long-lived CLI subprocesses more
often and deliver termination signals unreliably. Instead of branching on the
environment at every call site, the timeout, teardown grace window and
liveness-probe interval are bundled into one ExecutionPolicy that is picked
once at startup.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from ..config import CompatMode, Config, get_config

__all__ = [
    "ExecutionPolicy",
    "STANDARD_POLICY",
    "COMPAT_POLICY",
    "is_compat_environment",
    "detect_policy",
]

logger = logging.getLogger(__name__)

PROC_VERSION_PATH = Path("/proc/version")


@dataclass(frozen=True)
class ExecutionPolicy:
    """Timeout and teardown policy for streaming CLI subprocesses.

    Attributes:
        timeout: Upper bound (seconds) on a whole streaming run
        grace_window: Seconds between the graceful and the forceful signal on
            teardown; 0 means a single immediate graceful signal
        heartbeat_interval: Seconds between liveness probes, None disables them
        compat: Whether this is the compatibility-environment policy
    """

    timeout: float
    grace_window: float
    heartbeat_interval: float | None
    compat: bool = False


STANDARD_POLICY = ExecutionPolicy(
    timeout=600.0,
    grace_window=0.0,
    heartbeat_interval=None,
)

COMPAT_POLICY = ExecutionPolicy(
    timeout=300.0,
    grace_window=1.0,
    heartbeat_interval=30.0,
    compat=True,
)


def is_compat_environment(
    environ: Mapping[str, str] | None = None,
    proc_version: Path = PROC_VERSION_PATH,
) -> bool:
    """Detect environments known to hang subprocesses (WSL).

    Args:
        environ: Environment mapping (defaults to os.environ)
        proc_version: Kernel version file to inspect on Linux

    Returns:
        True if running under WSL
    """
    env = os.environ if environ is None else environ
    if env.get("WSL_DISTRO_NAME"):
        return True
    try:
        return "microsoft" in proc_version.read_text(encoding="utf-8", errors="replace").lower()
    except OSError:
        return False


def detect_policy(
    config: Config | None = None,
    environ: Mapping[str, str] | None = None,
) -> ExecutionPolicy:
    """Pick the execution policy for this process.

    AGP_COMPAT forces the choice; otherwise the environment is probed.
    AGP_CLI_TIMEOUT overrides the timeout of whichever policy is chosen.
    """
    config = config or get_config()

    if config.compat_mode is CompatMode.ON:
        compat = True
    elif config.compat_mode is CompatMode.OFF:
        compat = False
    else:
        compat = is_compat_environment(environ)

    policy = COMPAT_POLICY if compat else STANDARD_POLICY
    if config.cli_timeout is not None:
        policy = replace(policy, timeout=config.cli_timeout)

    logger.debug(f"Execution policy selected: {policy}")
    return policy
