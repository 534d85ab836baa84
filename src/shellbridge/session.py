"""Session records and the registry that tracks the foreground session."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, Dict, Mapping, Protocol

from .config import TabConfig


logger = logging.getLogger(__name__)


class SessionStatus(Enum):
    """Lifecycle states exposed by :class:`Session`."""

    INITIALIZING = auto()
    CONNECTED = auto()
    ERROR = auto()


_FORWARD_TRANSITIONS: Mapping[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.INITIALIZING: frozenset({SessionStatus.CONNECTED, SessionStatus.ERROR}),
    SessionStatus.CONNECTED: frozenset({SessionStatus.ERROR}),
    SessionStatus.ERROR: frozenset(),
}


class SessionStateError(RuntimeError):
    """Raised when a status change would move a session backwards."""


class ConnectionFailure(ConnectionError):
    """Raised when the remote side refuses to allocate or connect a session."""


class TransportClosed(ConnectionError):
    """Raised when sending on a transport that has already closed."""


@dataclass
class LogState:
    """Terminal log flags mirrored to the host over the messaging gateway."""

    save_terminal_log_to_file: bool = False
    add_timestamp_to_term_log: bool = False

    def as_dict(self) -> Dict[str, bool]:
        return {
            "saveTerminalLogToFile": self.save_terminal_log_to_file,
            "addTimeStampToTermLog": self.add_timestamp_to_term_log,
        }


@dataclass
class Session:
    """State owned by a single session controller."""

    id: str
    tab: TabConfig
    encoding: str = "utf-8"
    cwd_tracking: bool = False
    remote_id: str | None = None
    status: SessionStatus = field(default=SessionStatus.INITIALIZING)

    def advance(self, status: SessionStatus) -> None:
        """Move to ``status``; only forward transitions are accepted."""

        if status is self.status:
            return
        if status not in _FORWARD_TRANSITIONS[self.status]:
            raise SessionStateError(
                f"session {self.id}: cannot move from {self.status.name} to {status.name}"
            )
        logger.debug("session %s: %s -> %s", self.id, self.status.name, status.name)
        self.status = status

    def reset_for_reconnect(self) -> None:
        """Re-enter ``INITIALIZING`` for a user-triggered reconnect."""

        logger.debug("session %s: reconnect from %s", self.id, self.status.name)
        self.status = SessionStatus.INITIALIZING
        self.remote_id = None


class Disposable(Protocol):
    """Anything the registry can tear down when a session is discarded."""

    session: Session

    async def teardown(self) -> None:
        ...


class SessionRegistry:
    """Shared, read-mostly context describing which session holds focus."""

    def __init__(self) -> None:
        self._entries: Dict[str, Disposable] = {}
        self.foreground_id: str | None = None
        self.window_focused: bool = True
        self._discard_listeners: list[Callable[[str], Awaitable[None] | None]] = []

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, entry: Disposable) -> None:
        self._entries[entry.session.id] = entry

    def unregister(self, session_id: str) -> None:
        self._entries.pop(session_id, None)
        if self.foreground_id == session_id:
            self.foreground_id = None

    def get(self, session_id: str) -> Disposable | None:
        return self._entries.get(session_id)

    def set_foreground(self, session_id: str | None) -> None:
        self.foreground_id = session_id

    def is_foreground(self, session_id: str) -> bool:
        """Return ``True`` when ``session_id`` holds focus in a focused window."""

        return self.window_focused and self.foreground_id == session_id

    def on_discard(self, listener: Callable[[str], Awaitable[None] | None]) -> None:
        self._discard_listeners.append(listener)

    async def discard(self, session_id: str) -> None:
        """Tear down and forget ``session_id``."""

        entry = self._entries.get(session_id)
        if entry is None:
            return
        logger.info("discarding session %s", session_id)
        try:
            await entry.teardown()
        finally:
            self.unregister(session_id)
            for listener in list(self._discard_listeners):
                result = listener(session_id)
                if result is not None:
                    await result


__all__ = [
    "ConnectionFailure",
    "Disposable",
    "LogState",
    "Session",
    "SessionRegistry",
    "SessionStateError",
    "SessionStatus",
    "TransportClosed",
]
