"""Host environment boundary.

The engine can run inside a host (an editor, an agent server) that knows about
higher-level sessions, for example debug sessions. The host is optional: every
component works without one, it only adds session tagging and cleanup when a
session terminates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

__all__ = [
    "HostEnvironment",
    "HostSession",
    "SessionEvents",
    "SessionHub",
    "Unsubscribe",
]

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class HostSession:
    """A higher-level session known to the host."""

    id: str
    name: str = ""


class SessionEvents(Protocol):
    """Session lifecycle notifications exposed by a host."""

    def on_session_started(self, callback: Callable[[HostSession], object]) -> Unsubscribe:
        ...

    def on_session_terminated(self, callback: Callable[[HostSession], object]) -> Unsubscribe:
        ...


@dataclass
class HostEnvironment:
    """What the engine may ask of its host.

    Attributes:
        events: Session notifications, None when the host has none
        active_session: Returns the currently active session, if any
    """

    events: SessionEvents | None = None
    active_session: Callable[[], HostSession | None] = field(default=lambda: None)

    @property
    def active_session_id(self) -> str | None:
        try:
            session = self.active_session()
        except Exception as e:
            logger.debug(f"Host could not report the active session: {e}")
            return None
        return session.id if session else None


class SessionHub:
    """In-process session notifier.

    Used by hosts without a native session API and by tests. Tracks the most
    recently started session as the active one.

    Example:
        hub = SessionHub()
        host = hub.as_host()
        registry = ProcessRegistry(host=host)

        hub.start_session("debug-1")
        ...
        hub.terminate_session("debug-1")  # kills processes tagged debug-1
    """

    def __init__(self) -> None:
        self._started: list[Callable[[HostSession], object]] = []
        self._terminated: list[Callable[[HostSession], object]] = []
        self._sessions: dict[str, HostSession] = {}
        self._active: HostSession | None = None

    def on_session_started(self, callback: Callable[[HostSession], object]) -> Unsubscribe:
        self._started.append(callback)
        return lambda: self._remove(self._started, callback)

    def on_session_terminated(self, callback: Callable[[HostSession], object]) -> Unsubscribe:
        self._terminated.append(callback)
        return lambda: self._remove(self._terminated, callback)

    @staticmethod
    def _remove(callbacks: list, callback: Callable) -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    @property
    def active_session(self) -> HostSession | None:
        return self._active

    @property
    def listener_count(self) -> int:
        return len(self._started) + len(self._terminated)

    def start_session(self, session_id: str, name: str = "") -> HostSession:
        session = HostSession(id=session_id, name=name)
        self._sessions[session_id] = session
        self._active = session
        self._notify(self._started, session)
        return session

    def terminate_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None) or HostSession(id=session_id)
        if self._active is not None and self._active.id == session_id:
            self._active = None
        self._notify(self._terminated, session)

    def _notify(self, callbacks: list, session: HostSession) -> None:
        for callback in list(callbacks):
            try:
                callback(session)
            except Exception as e:
                logger.warning(f"Error in session callback: {e}")

    def as_host(self) -> HostEnvironment:
        return HostEnvironment(events=self, active_session=lambda: self._active)
