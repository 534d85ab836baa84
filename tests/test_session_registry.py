from __future__ import annotations

import asyncio

import pytest

from shellbridge.config import TabConfig
from shellbridge.session import (
    LogState,
    Session,
    SessionRegistry,
    SessionStateError,
    SessionStatus,
)


class FakeEntry:
    def __init__(self, session_id: str) -> None:
        self.session = Session(id=session_id, tab=TabConfig(id=session_id))
        self.teardowns = 0

    async def teardown(self) -> None:
        self.teardowns += 1


def test_session_status_only_moves_forward() -> None:
    session = Session(id="a", tab=TabConfig(id="a"))

    session.advance(SessionStatus.CONNECTED)
    session.advance(SessionStatus.CONNECTED)
    session.advance(SessionStatus.ERROR)

    with pytest.raises(SessionStateError):
        session.advance(SessionStatus.CONNECTED)
    assert session.status is SessionStatus.ERROR


def test_reset_for_reconnect_clears_remote_id() -> None:
    session = Session(id="a", tab=TabConfig(id="a"), remote_id="r1")
    session.advance(SessionStatus.ERROR)

    session.reset_for_reconnect()

    assert session.status is SessionStatus.INITIALIZING
    assert session.remote_id is None


def test_foreground_requires_focused_window() -> None:
    registry = SessionRegistry()
    registry.set_foreground("a")

    assert registry.is_foreground("a")
    assert not registry.is_foreground("b")
    registry.window_focused = False
    assert not registry.is_foreground("a")


def test_discard_tears_down_and_notifies_listeners() -> None:
    registry = SessionRegistry()
    entry = FakeEntry("a")
    registry.register(entry)
    registry.set_foreground("a")
    discarded: list[str] = []

    async def _listener(session_id: str) -> None:
        discarded.append(session_id)

    registry.on_discard(_listener)

    async def _exercise() -> None:
        await registry.discard("a")
        await registry.discard("a")

    asyncio.run(_exercise())

    assert entry.teardowns == 1
    assert discarded == ["a"]
    assert "a" not in registry
    assert registry.foreground_id is None


def test_log_state_wire_names() -> None:
    state = LogState(save_terminal_log_to_file=True)

    assert state.as_dict() == {
        "saveTerminalLogToFile": True,
        "addTimeStampToTermLog": False,
    }
