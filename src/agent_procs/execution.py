"""Single shell command execution with streamed, pollable output.

This module provides:
- ExecutionBuffer: append-only output with a complete-line retrieval cursor
- ExecutionListener: the push-side consumer of one command
- ExecutionProcess: runs exactly one command inside a HostTerminal

Key design points:
- stdout and stderr are merged into one ordered stream (stderr=STDOUT)
- The process gets its own session/process group so the whole tree can be
  signalled without touching the parent
- Push notifications are throttled to one per emit interval; the poll API and
  the push API share one cursor, so nothing is delivered twice
- Termination goes through the ProcessRegistry when the process is
  registered, and falls back to signalling the tree directly otherwise
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import subprocess
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .config import get_config
from .errors import SpawnError
from .runtime.process_tree import (
    FORCEFUL_SIGNAL,
    IS_WINDOWS,
    ProcessTreeResolver,
    PsutilTreeResolver,
    process_group_of,
    resolve_tree,
    terminate_tree,
)

if TYPE_CHECKING:
    from .host import HostEnvironment
    from .registry import ProcessRegistry
    from .terminal import HostTerminal

__all__ = [
    "ExecutionBuffer",
    "ExecutionListener",
    "ExecutionProcess",
    "ExitInfo",
    "wrap_command",
]

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096

# The shell wrapper writes the final working directory here
CWD_FILE_ENV = "AGP_CWD_FILE"

UTF8_ENV = {
    "LANG": "en_US.UTF-8",
    "LC_ALL": "en_US.UTF-8",
}


@dataclass(frozen=True)
class ExitInfo:
    """How a command ended.

    Attributes:
        exit_code: Process exit code, None if it was killed by a signal
        signal_name: Name of the terminating signal, if any
        aborted: Whether abort() was requested before the process ended
    """

    exit_code: int | None
    signal_name: str | None = None
    aborted: bool = False

    @classmethod
    def from_returncode(cls, returncode: int | None, aborted: bool = False) -> "ExitInfo":
        if returncode is None:
            return cls(exit_code=None, aborted=aborted)
        if returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = f"SIG{-returncode}"
            return cls(exit_code=None, signal_name=name, aborted=aborted)
        return cls(exit_code=returncode, aborted=aborted)


class ExecutionBuffer:
    """Append-only output accumulator with a complete-line cursor.

    The cursor only ever advances to just after the last newline, so a
    partial trailing line is held back until it is completed.
    """

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._full_output = ""
        self.last_retrieved_index = 0

    @property
    def full_output(self) -> str:
        if self._chunks:
            self._full_output += "".join(self._chunks)
            self._chunks.clear()
        return self._full_output

    def append(self, text: str) -> None:
        if text:
            self._chunks.append(text)

    def has_unretrieved(self) -> bool:
        return self.last_retrieved_index < len(self.full_output)

    def take_complete_lines(self) -> str:
        """Consume everything up to and including the last newline."""
        output = self.full_output[self.last_retrieved_index:]
        index = output.rfind("\n")
        if index == -1:
            return ""
        index += 1
        self.last_retrieved_index += index
        return output[:index]

    def drain(self) -> str:
        """Consume everything, including a trailing partial line."""
        output = self.full_output[self.last_retrieved_index:]
        self.last_retrieved_index += len(output)
        return output


class ExecutionListener:
    """Push-side consumer of one ExecutionProcess.

    Exactly one listener may be attached to a process. Subclass and override
    what you need; every callback defaults to a no-op.
    """

    def on_line(self, output: str) -> None:
        """New complete lines are available."""

    def on_shell_execution_complete(self, info: ExitInfo) -> None:
        """The OS process ended."""

    def on_completed(self, full_output: str) -> None:
        """All output has been flushed."""

    def on_continue(self) -> None:
        """The consumer waiting on this command may proceed."""


def wrap_command(command: str) -> str:
    """Wrap a POSIX shell command so its final working directory is recorded.

    The command's exit status is preserved.
    """
    return (
        f"{command}\n"
        "__agp_status=$?\n"
        'pwd > "$' + CWD_FILE_ENV + '" 2>/dev/null\n'
        "exit $__agp_status\n"
    )


class ExecutionProcess:
    """Runs one shell command inside a HostTerminal.

    Example:
        process = ExecutionProcess(terminal, registry=registry)
        process.listen(my_listener)
        await process.start("npm test")
        ...
        while not process.is_completed:
            print(process.get_unretrieved_output(), end="")
            await asyncio.sleep(1)
    """

    abort_signal: int = signal.SIGTERM

    def __init__(
        self,
        terminal: "HostTerminal",
        registry: "ProcessRegistry | None" = None,
        host: "HostEnvironment | None" = None,
        *,
        emit_interval: float | None = None,
        grace_window: float | None = None,
        resolver: ProcessTreeResolver | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        config = get_config()
        self.terminal = terminal
        self.registry = registry
        self.host = host
        self.emit_interval = emit_interval if emit_interval is not None else config.emit_interval
        self.grace_window = grace_window if grace_window is not None else config.kill_grace_window
        self._resolver = resolver or PsutilTreeResolver()
        self._env = dict(env or {})

        self.command = ""
        self.pid: int | None = None
        self.pgid: int | None = None
        self.process_id: str | None = None
        self.exit_info: ExitInfo | None = None
        self.buffer = ExecutionBuffer()

        self._process: asyncio.subprocess.Process | None = None
        self._stream_task: asyncio.Task | None = None
        self._kill_task: asyncio.Task | None = None
        self._cwd_file: str | None = None
        self._started = False
        self._aborted = False
        self._completed = False
        self._done = asyncio.Event()

        self._listener: ExecutionListener | None = None
        self._is_listening = False
        self._continued = False
        self._last_emit: float | None = None
        self._emit_handle: asyncio.TimerHandle | None = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def full_output(self) -> str:
        return self.buffer.full_output

    @property
    def is_aborted(self) -> bool:
        return self._aborted

    @property
    def is_completed(self) -> bool:
        return self._completed

    @property
    def is_running(self) -> bool:
        return self._started and not self._completed

    # =========================================================================
    # Push consumer
    # =========================================================================

    def listen(self, listener: ExecutionListener) -> None:
        """Attach the single push consumer of this command.

        Raises:
            RuntimeError: If another listener is already attached
        """
        if self._listener is not None and self._listener is not listener:
            raise RuntimeError("ExecutionProcess already has a listener")
        self._listener = listener
        self._is_listening = True

    def release(self) -> None:
        """Stop line notifications and let the waiting consumer continue.

        The command keeps running; its output stays available through
        get_unretrieved_output().
        """
        self._is_listening = False
        self._cancel_emit_timer()
        self._fire_continue()

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self, command: str) -> ExitInfo:
        """Start ``command`` and wait for it to finish."""
        await self.start(command)
        return await self.wait()

    async def start(self, command: str) -> None:
        """Spawn ``command`` and begin streaming its output in the background.

        Raises:
            SpawnError: If the process could not be started
            RuntimeError: If this ExecutionProcess was already started
        """
        if self._started:
            raise RuntimeError("ExecutionProcess runs exactly one command")
        self._started = True
        self.command = command

        cwd = self.terminal.get_current_working_directory()
        try:
            process = await self._spawn(command, cwd)
        except (OSError, ValueError) as e:
            logger.error(f"Shell execution error: {e}")
            self._remove_cwd_file()
            self._complete(ExitInfo(exit_code=1, aborted=self._aborted))
            raise SpawnError(command, str(e)) from e

        self._process = process
        self.pid = process.pid
        # Recorded now: once the shell exits its group can no longer be looked up
        self.pgid = process_group_of(process.pid)
        logger.debug(f"Started command pid={process.pid} cwd={cwd} command={command!r}")

        self._register(process)
        self._stream_task = asyncio.create_task(
            self._stream(process),
            name=f"execution-{process.pid}",
        )

        if self._aborted:
            self._request_kill()

    async def wait(self) -> ExitInfo:
        """Wait until the completion callbacks have fired."""
        await self._done.wait()
        assert self.exit_info is not None
        return self.exit_info

    def _build_env(self, cwd: str) -> dict[str, str]:
        env = {**os.environ, **self._env, **UTF8_ENV, "PWD": cwd}
        if self._cwd_file:
            env[CWD_FILE_ENV] = self._cwd_file
        return env

    async def _spawn(self, command: str, cwd: str) -> asyncio.subprocess.Process:
        kwargs: dict[str, Any] = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
            script = command
        else:
            kwargs["start_new_session"] = True
            fd, self._cwd_file = tempfile.mkstemp(prefix="agp-cwd-")
            os.close(fd)
            script = wrap_command(command)

        # stdin=DEVNULL: never let a command inherit the server's own stdin
        return await asyncio.create_subprocess_shell(
            script,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=cwd,
            env=self._build_env(cwd),
            **kwargs,
        )

    def _register(self, process: asyncio.subprocess.Process) -> None:
        if self.registry is None:
            return
        process_id = self.registry.generate_process_id("exec", process.pid)
        session_id = self.host.active_session_id if self.host else None
        try:
            registered = self.registry.register(
                process,
                process_id,
                description=f"Terminal command: {self.command}",
                session_id=session_id,
            )
        except Exception as e:
            logger.warning(f"Failed to register process: {e}")
            return
        if registered:
            self.process_id = process_id

    async def _stream(self, process: asyncio.subprocess.Process) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        exit_info: ExitInfo | None = None

        try:
            if process.stdout:
                while True:
                    chunk = await process.stdout.read(CHUNK_SIZE)
                    if not chunk or self._aborted:
                        break
                    self._append(decoder.decode(chunk))
            self._append(decoder.decode(b"", final=True))

            if self._aborted:
                await self._wait_after_abort(process)

            returncode = await process.wait()
            exit_info = ExitInfo.from_returncode(returncode, aborted=self._aborted)
            logger.debug(f"Command finished pid={process.pid} returncode={returncode}")

        except Exception as e:
            logger.error(f"Shell execution error pid={process.pid}: {e}")
            exit_info = ExitInfo(exit_code=1, aborted=self._aborted)

        finally:
            if exit_info is None:
                # Cancelled from outside: the process must not outlive us
                exit_info = ExitInfo(exit_code=None, aborted=True)
                if process.returncode is None:
                    self._aborted = True
                    self._request_kill()
            self._complete(exit_info)

    async def _wait_after_abort(self, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_window)
            return
        except asyncio.TimeoutError:
            pass

        logger.debug(f"Force killing aborted command pid={process.pid}")
        try:
            if self.pgid is not None:
                os.killpg(self.pgid, FORCEFUL_SIGNAL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"Force kill failed pid={process.pid}: {e}")

        try:
            await asyncio.wait_for(process.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            logger.warning(f"Command did not exit after kill pid={process.pid}")

    # =========================================================================
    # Output
    # =========================================================================

    def _append(self, text: str) -> None:
        if not text:
            return
        self.buffer.append(text)

        if not self._is_listening:
            return

        now = asyncio.get_running_loop().time()
        if self._last_emit is None or now - self._last_emit > self.emit_interval:
            self._emit_remaining_buffer()
            self._last_emit = now
        elif self._emit_handle is None:
            delay = self.emit_interval - (now - self._last_emit)
            self._emit_handle = asyncio.get_running_loop().call_later(
                delay, self._on_emit_timer
            )

    def _on_emit_timer(self) -> None:
        self._emit_handle = None
        if self._completed:
            return
        self._emit_remaining_buffer()
        self._last_emit = asyncio.get_running_loop().time()

    def _cancel_emit_timer(self) -> None:
        if self._emit_handle is not None:
            self._emit_handle.cancel()
            self._emit_handle = None

    def _emit_remaining_buffer(self) -> None:
        if not self._is_listening or self._listener is None:
            return
        output = self.buffer.take_complete_lines()
        if output:
            self._notify("on_line", output)

    def has_unretrieved_output(self) -> bool:
        return self.buffer.has_unretrieved()

    def get_unretrieved_output(self) -> str:
        """Consume new output up to the last newline ("" if nothing new)."""
        return self.buffer.take_complete_lines()

    def drain_output(self) -> str:
        """Consume all new output, including a trailing partial line.

        Meant for after completion, when no more output can arrive.
        """
        return self.buffer.drain()

    # =========================================================================
    # Abort
    # =========================================================================

    def abort(self) -> None:
        """Request termination of the command's process tree.

        Idempotent and a no-op once the command has completed. Does not wait
        for the process to exit; use wait() for that.
        """
        if self._aborted or self._completed:
            return
        self._aborted = True
        logger.info(f"Aborting command pid={self.pid}: {self.command!r}")
        if self._process is not None:
            self._request_kill()

    def _request_kill(self) -> None:
        if self._kill_task is not None:
            return

        if (
            self.registry is not None
            and self.process_id is not None
            and self.process_id in self.registry
        ):
            coro = self.registry.kill_process(self.process_id, self.abort_signal)
        elif self.pid is not None:
            coro = self._kill_directly(self.pid)
        else:
            return

        self._kill_task = asyncio.create_task(coro, name=f"abort-{self.pid}")
        self._kill_task.add_done_callback(_log_task_error)

    async def _kill_directly(self, pid: int) -> None:
        tree = await resolve_tree(self._resolver, pid, self.pgid)
        await terminate_tree(tree, self.abort_signal, self.grace_window)

    # =========================================================================
    # Completion
    # =========================================================================

    def _complete(self, exit_info: ExitInfo) -> None:
        if self._completed:
            return
        self.exit_info = exit_info

        self._notify("on_shell_execution_complete", exit_info)
        self._emit_remaining_buffer()
        self._cancel_emit_timer()
        self._completed = True

        if self.registry is not None and self.process_id is not None:
            self.registry.unregister(self.process_id)

        tracked_cwd = self._read_cwd_file()
        if tracked_cwd:
            self.terminal.set_current_working_directory(tracked_cwd)

        self._notify("on_completed", self.full_output)
        self.terminal.busy = False
        self._fire_continue()
        self._done.set()

    def _fire_continue(self) -> None:
        if self._continued:
            return
        self._continued = True
        self._notify("on_continue")

    def _notify(self, name: str, *args: Any) -> None:
        if self._listener is None:
            return
        callback: Callable[..., None] = getattr(self._listener, name)
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"Error in listener {name}: {e}")

    def _read_cwd_file(self) -> str | None:
        if not self._cwd_file:
            return None
        try:
            text = Path(self._cwd_file).read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            text = ""
        self._remove_cwd_file()
        return text if text and os.path.isdir(text) else None

    def _remove_cwd_file(self) -> None:
        if not self._cwd_file:
            return
        try:
            os.unlink(self._cwd_file)
        except OSError:
            pass
        self._cwd_file = None


def _log_task_error(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Failed to kill process: {exc}")
