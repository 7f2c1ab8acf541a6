"""Process tree resolution and escalating termination.

This module provides:
- ProcessTreeResolver: enumerate the descendants of a pid (psutil-backed)
- ProcessTree: the pid set a termination signal is sent to
- terminate_tree(): graceful signal -> grace window -> forceful signal

Key design points:
- Descendants are signalled before the root, so a shell cannot respawn
  children after it is gone
- On POSIX the process group is signalled too when the root leads its own
  group; background jobs orphaned by an exited shell are still reached
- Signalling a process that already exited is never an error
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import Protocol

import psutil

__all__ = [
    "IS_WINDOWS",
    "FORCEFUL_SIGNAL",
    "GRACEFUL_SIGNALS",
    "DEFAULT_GRACE_WINDOW",
    "ProcessTree",
    "ProcessTreeResolver",
    "PsutilTreeResolver",
    "process_group_of",
    "resolve_tree",
    "signal_tree",
    "terminate_tree",
    "tree_alive",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Signals a process may catch or ignore; these get escalated after the grace window
GRACEFUL_SIGNALS = frozenset({signal.SIGTERM, signal.SIGINT})
FORCEFUL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)

DEFAULT_GRACE_WINDOW = 5.0  # seconds between graceful and forceful signal
POLL_INTERVAL = 0.05


class ProcessTreeResolver(Protocol):
    """Enumerates the descendant processes of a pid."""

    def descendants(self, pid: int) -> list[int]:
        """Return the pids of every descendant of ``pid`` (empty if it is gone)."""
        ...


class PsutilTreeResolver:
    """ProcessTreeResolver backed by psutil (works on POSIX and Windows)."""

    def descendants(self, pid: int) -> list[int]:
        try:
            children = psutil.Process(pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"Cannot enumerate children of pid={pid}: {e}")
            return []
        return [child.pid for child in children]


@dataclass
class ProcessTree:
    """Snapshot of the pid set rooted at one process.

    Attributes:
        root_pid: The tracked process
        descendants: Pids of its descendants at resolution time
        pgid: Process group to signal as well (POSIX group leaders only)
    """

    root_pid: int
    descendants: list[int] = field(default_factory=list)
    pgid: int | None = None

    @property
    def pids(self) -> list[int]:
        return [*self.descendants, self.root_pid]


def process_group_of(pid: int) -> int | None:
    """Return ``pid`` if it leads its own process group (POSIX), else None."""
    if IS_WINDOWS:
        return None
    try:
        return pid if os.getpgid(pid) == pid else None
    except (ProcessLookupError, PermissionError):
        return None


async def resolve_tree(
    resolver: ProcessTreeResolver,
    pid: int,
    pgid: int | None = None,
) -> ProcessTree:
    """Resolve the tree rooted at ``pid`` without blocking the event loop."""
    descendants = await asyncio.to_thread(resolver.descendants, pid)
    return ProcessTree(root_pid=pid, descendants=descendants, pgid=pgid)


def _send(pid: int, sig: int) -> None:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.debug(f"Failed to send signal {sig} to pid={pid}: {e}")


def signal_tree(tree: ProcessTree, sig: int) -> None:
    """Send ``sig`` to every descendant, then the root, then the group."""
    for pid in tree.descendants:
        _send(pid, sig)
    _send(tree.root_pid, sig)

    if tree.pgid is not None and not IS_WINDOWS:
        try:
            os.killpg(tree.pgid, sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed for pgid={tree.pgid}: {e}")


def _pid_alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # Zombies still count as group members until reaped
    return any(
        _pid_alive(proc.pid)
        for proc in psutil.process_iter()
        if _safe_pgid(proc.pid) == pgid
    )


def _safe_pgid(pid: int) -> int | None:
    try:
        return os.getpgid(pid)
    except (ProcessLookupError, PermissionError):
        return None


def tree_alive(tree: ProcessTree) -> bool:
    """Whether any process of the tree (or its group) is still running."""
    if any(_pid_alive(pid) for pid in tree.pids):
        return True
    if tree.pgid is not None and not IS_WINDOWS:
        return _group_alive(tree.pgid)
    return False


async def wait_for_tree_exit(tree: ProcessTree, timeout: float) -> bool:
    """Poll until the tree is gone or ``timeout`` elapses.

    Returns:
        True if every process exited within the timeout
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        alive = await asyncio.to_thread(tree_alive, tree)
        if not alive:
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(POLL_INTERVAL, remaining))


async def terminate_tree(
    tree: ProcessTree,
    sig: int = signal.SIGTERM,
    grace_window: float = DEFAULT_GRACE_WINDOW,
) -> bool:
    """Signal a process tree, escalating graceful signals after a grace window.

    Termination strategy:
    1. Send ``sig`` to descendants, root and group
    2. If ``sig`` is graceful and grace_window > 0, wait up to grace_window
    3. If anything is still alive, send the forceful signal to the same set

    Args:
        tree: The resolved pid set
        sig: Signal to send first
        grace_window: Seconds to wait before escalating

    Returns:
        True if the forceful signal had to be sent
    """
    logger.debug(
        f"Sending {signal.Signals(sig).name} to tree root={tree.root_pid} "
        f"descendants={tree.descendants} pgid={tree.pgid}"
    )
    signal_tree(tree, sig)

    if sig not in GRACEFUL_SIGNALS or grace_window <= 0:
        return False

    if await wait_for_tree_exit(tree, grace_window):
        return False

    logger.debug(
        f"Tree root={tree.root_pid} still alive after {grace_window}s, "
        f"escalating to {signal.Signals(FORCEFUL_SIGNAL).name}"
    )
    signal_tree(tree, FORCEFUL_SIGNAL)
    return True
