from __future__ import annotations

import json

import pytest

from shellbridge.runtime.messaging import (
    MessageChannel,
    MessagingGateway,
    ShortcutContext,
    TerminalAction,
)
from shellbridge.session import LogState


class FakeTarget:
    def __init__(self, active: bool = True) -> None:
        self.log_state = LogState()
        self.active = active
        self.calls: list[tuple] = []

    def is_active(self) -> bool:
        return self.active

    def zoom(self, delta: float) -> None:
        self.calls.append(("zoom", delta))

    def switch_encoding(self, encoding: str) -> None:
        self.calls.append(("encoding", encoding))

    def batch_input(self, command: str) -> None:
        self.calls.append(("batch", command))

    def show_info_panel(self) -> None:
        self.calls.append(("info",))

    def quick_command(self, command: str, input_only: bool = False) -> None:
        self.calls.append(("quick", command, input_only))

    def toggle_search(self) -> None:
        self.calls.append(("search",))

    def search_next(self, keyword, options) -> None:
        self.calls.append(("next", keyword, dict(options)))

    def search_prev(self, keyword, options) -> None:
        self.calls.append(("prev", keyword, dict(options)))

    def clear_search(self) -> None:
        self.calls.append(("clear-search",))

    def focus(self) -> None:
        self.calls.append(("focus",))

    def blur(self) -> None:
        self.calls.append(("blur",))


def _gateway(active: bool = True) -> tuple[MessageChannel, FakeTarget, MessagingGateway]:
    channel = MessageChannel()
    target = FakeTarget(active)
    gateway = MessagingGateway(channel, target, session_id="s1")
    gateway.attach()
    return channel, target, gateway


def test_targeted_action_requires_session_in_target_ids() -> None:
    channel, target, gateway = _gateway()

    channel.post({"action": "zoom-terminal", "zoomValue": 1, "targetIds": ["s2"]})
    channel.post({"action": "zoom-terminal", "zoomValue": 1})
    assert target.calls == []

    channel.post({"action": "zoom-terminal", "zoomValue": 1, "targetIds": ["s2", "s1"]})
    assert target.calls == [("zoom", 1.0)]


def test_targeted_actions_reach_the_session() -> None:
    channel, target, gateway = _gateway()
    ids = ["s1"]

    channel.post({"action": "change-encode", "encode": "gbk", "targetIds": ids})
    channel.post({"action": "batch-input", "cmd": "uptime", "targetIds": ids})
    channel.post({"action": "quick-command", "cmd": "ls", "inputOnly": True, "targetIds": ids})
    channel.post({"action": "show-info-panel", "targetIds": ids})
    channel.post({"action": "open-terminal-search", "targetIds": ids})
    search = {"keyword": "err", "options": {"caseSensitive": True}, "targetIds": ids}
    channel.post({"action": "do-search-next", **search})
    channel.post({"action": "do-search-prev", "keyword": "err", "targetIds": ids})
    channel.post({"action": "clear-search", "targetIds": ids})

    assert target.calls == [
        ("encoding", "gbk"),
        ("batch", "uptime"),
        ("quick", "ls", True),
        ("info",),
        ("search",),
        ("next", "err", {"caseSensitive": True}),
        ("prev", "err", {}),
        ("clear-search",),
    ]


def test_log_state_request_is_answered_on_the_channel() -> None:
    channel, target, gateway = _gateway()
    replies: list[dict] = []
    channel.subscribe(
        lambda message: replies.append(dict(message))
        if message.get("action") == TerminalAction.RETURN_LOG_STATE.value
        else None
    )

    channel.post({"action": "get-term-log-state", "pid": "other"})
    channel.post(
        {"action": "set-term-log-state", "pid": "s1", "saveTerminalLogToFile": True}
    )
    channel.post({"action": "get-term-log-state", "pid": "s1"})

    assert replies == [
        {
            "action": "return-term-log-state",
            "pid": "s1",
            "state": {"saveTerminalLogToFile": True, "addTimeStampToTermLog": False},
        }
    ]


def test_focus_events_only_apply_to_active_session() -> None:
    channel, target, gateway = _gateway(active=False)

    assert gateway.handle({"type": "focus"}) is False
    target.active = True
    assert gateway.handle({"type": "blur"}) is True
    assert target.calls == [("blur",)]


def test_detach_stops_delivery_and_unknown_actions_are_ignored() -> None:
    channel, target, gateway = _gateway()

    assert gateway.handle({"action": "no-such-action", "targetIds": ["s1"]}) is False
    gateway.detach()
    channel.post({"action": "batch-input", "cmd": "ls", "targetIds": ["s1"]})

    assert not gateway.attached
    assert target.calls == []
    assert len(channel) == 0


def test_failing_handler_does_not_stop_other_subscribers() -> None:
    channel = MessageChannel()
    seen: list[str] = []

    def _broken(message) -> None:
        raise RuntimeError("boom")

    channel.subscribe(_broken)
    channel.subscribe(lambda message: seen.append(message["action"]))
    channel.post_json(json.dumps({"action": "clear-search"}))

    assert seen == ["clear-search"]
    with pytest.raises(ValueError):
        channel.post_json("[1, 2]")


def test_context_menu_click_invokes_action_once() -> None:
    channel = MessageChannel()
    opened: list[dict] = []
    invoked: list[tuple] = []
    channel.subscribe(
        lambda message: opened.append(dict(message))
        if message.get("action") == "open-context-menu"
        else None
    )
    context = ShortcutContext(
        channel, owner_id="s1", actions={"paste": lambda *args: invoked.append(args)}
    )

    menu_id = context.open([{"func": "paste", "text": "paste"}], {"left": 3, "top": 4})
    channel.post({"action": "click-context-menu", "id": "stale", "func": "paste"})
    click = {"action": "click-context-menu", "id": menu_id, "func": "paste"}
    channel.post({**click, "args": ["text"]})
    channel.post(click)

    assert opened == [
        {
            "action": "open-context-menu",
            "id": menu_id,
            "pid": "s1",
            "items": [{"func": "paste", "text": "paste"}],
            "pos": {"left": 3, "top": 4},
        }
    ]
    assert invoked == [("text",)]
    assert context.pending_id is None


def test_close_context_menu_after_clears_pending_menu() -> None:
    channel = MessageChannel()
    invoked: list[str] = []
    context = ShortcutContext(
        channel, owner_id="s1", actions={"copy": lambda: invoked.append("copy")}
    )

    menu_id = context.open([])
    channel.post({"action": "close-context-menu-after"})
    channel.post({"action": "click-context-menu", "id": menu_id, "func": "copy"})

    assert invoked == []
    assert len(channel) == 0
