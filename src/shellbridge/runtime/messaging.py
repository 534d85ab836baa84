"""Out-of-band action channel shared by every session in a window."""

from __future__ import annotations

import json
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Protocol, Sequence

from ..session import LogState


logger = logging.getLogger(__name__)

Message = Mapping[str, Any]
MessageHandler = Callable[[Message], None]


class TerminalAction(str, Enum):
    """Action discriminators carried in the ``action`` field."""

    ZOOM = "zoom-terminal"
    CHANGE_ENCODING = "change-encode"
    BATCH_INPUT = "batch-input"
    SHOW_INFO_PANEL = "show-info-panel"
    QUICK_COMMAND = "quick-command"
    OPEN_SEARCH = "open-terminal-search"
    SEARCH_NEXT = "do-search-next"
    SEARCH_PREV = "do-search-prev"
    CLEAR_SEARCH = "clear-search"
    GET_LOG_STATE = "get-term-log-state"
    RETURN_LOG_STATE = "return-term-log-state"
    SET_LOG_STATE = "set-term-log-state"
    OPEN_CONTEXT_MENU = "open-context-menu"
    CLICK_CONTEXT_MENU = "click-context-menu"
    CLOSE_CONTEXT_MENU_AFTER = "close-context-menu-after"


FOCUS_EVENT = "focus"
BLUR_EVENT = "blur"


class MessageChannel:
    """In-process broadcast channel; every subscriber sees every message."""

    def __init__(self) -> None:
        self._subscribers: list[MessageHandler] = []

    def subscribe(self, handler: MessageHandler) -> Callable[[], None]:
        """Register ``handler``; the returned callable removes it again."""

        self._subscribers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return _unsubscribe

    def post(self, message: Message) -> None:
        for handler in list(self._subscribers):
            try:
                handler(message)
            except Exception:
                logger.exception("message handler failed for %r", message.get("action"))

    def post_json(self, raw: str | bytes) -> None:
        """Decode a JSON wire message and broadcast it."""

        message = json.loads(raw)
        if not isinstance(message, dict):
            raise ValueError("message must be a JSON object")
        self.post(message)

    def __len__(self) -> int:
        return len(self._subscribers)


class GatewayTarget(Protocol):
    """Operations a session exposes to out-of-band actions."""

    log_state: LogState

    def is_active(self) -> bool:
        ...

    def zoom(self, delta: float) -> None:
        ...

    def switch_encoding(self, encoding: str) -> None:
        ...

    def batch_input(self, command: str) -> None:
        ...

    def show_info_panel(self) -> None:
        ...

    def quick_command(self, command: str, input_only: bool = False) -> None:
        ...

    def toggle_search(self) -> None:
        ...

    def search_next(self, keyword: str, options: Mapping[str, Any]) -> None:
        ...

    def search_prev(self, keyword: str, options: Mapping[str, Any]) -> None:
        ...

    def clear_search(self) -> None:
        ...

    def focus(self) -> None:
        ...

    def blur(self) -> None:
        ...


Handler = Callable[["MessagingGateway", Message], None]


def _zoom(gateway: "MessagingGateway", message: Message) -> None:
    gateway.target.zoom(float(message.get("zoomValue", 0)))


def _change_encoding(gateway: "MessagingGateway", message: Message) -> None:
    gateway.target.switch_encoding(str(message.get("encode", "")))


def _batch_input(gateway: "MessagingGateway", message: Message) -> None:
    gateway.target.batch_input(str(message.get("cmd", "")))


def _show_info(gateway: "MessagingGateway", message: Message) -> None:
    gateway.target.show_info_panel()


def _quick_command(gateway: "MessagingGateway", message: Message) -> None:
    gateway.target.quick_command(
        str(message.get("cmd", "")), bool(message.get("inputOnly", False))
    )


def _open_search(gateway: "MessagingGateway", message: Message) -> None:
    gateway.target.toggle_search()


def _search_next(gateway: "MessagingGateway", message: Message) -> None:
    gateway.target.search_next(str(message.get("keyword", "")), message.get("options") or {})


def _search_prev(gateway: "MessagingGateway", message: Message) -> None:
    gateway.target.search_prev(str(message.get("keyword", "")), message.get("options") or {})


def _clear_search(gateway: "MessagingGateway", message: Message) -> None:
    gateway.target.clear_search()


def _get_log_state(gateway: "MessagingGateway", message: Message) -> None:
    gateway.channel.post(
        {
            "action": TerminalAction.RETURN_LOG_STATE.value,
            "pid": gateway.session_id,
            "state": gateway.target.log_state.as_dict(),
        }
    )


def _set_log_state(gateway: "MessagingGateway", message: Message) -> None:
    state = gateway.target.log_state
    state.save_terminal_log_to_file = bool(message.get("saveTerminalLogToFile", False))
    state.add_timestamp_to_term_log = bool(message.get("addTimeStampToTermLog", False))


# Actions gated on the session id appearing in ``targetIds``.
TARGETED_HANDLERS: Dict[TerminalAction, Handler] = {
    TerminalAction.ZOOM: _zoom,
    TerminalAction.CHANGE_ENCODING: _change_encoding,
    TerminalAction.BATCH_INPUT: _batch_input,
    TerminalAction.SHOW_INFO_PANEL: _show_info,
    TerminalAction.QUICK_COMMAND: _quick_command,
    TerminalAction.OPEN_SEARCH: _open_search,
    TerminalAction.SEARCH_NEXT: _search_next,
    TerminalAction.SEARCH_PREV: _search_prev,
    TerminalAction.CLEAR_SEARCH: _clear_search,
}

# Actions gated on ``pid`` naming the session.
PID_HANDLERS: Dict[TerminalAction, Handler] = {
    TerminalAction.GET_LOG_STATE: _get_log_state,
    TerminalAction.SET_LOG_STATE: _set_log_state,
}


def _parse_action(value: Any) -> TerminalAction | None:
    try:
        return TerminalAction(value)
    except ValueError:
        return None


class MessagingGateway:
    """Route channel messages addressed to one session onto that session."""

    def __init__(
        self, channel: MessageChannel, target: GatewayTarget, *, session_id: str
    ) -> None:
        self.channel = channel
        self.target = target
        self.session_id = session_id
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def attached(self) -> bool:
        return self._unsubscribe is not None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.channel.subscribe(self.handle)

    def detach(self) -> None:
        unsubscribe = self._unsubscribe
        self._unsubscribe = None
        if unsubscribe is not None:
            unsubscribe()

    def handle(self, message: Message) -> bool:
        """Dispatch ``message``; return ``True`` when this session acted on it."""

        handled = False
        action = _parse_action(message.get("action"))
        if action is not None:
            handler = TARGETED_HANDLERS.get(action)
            if handler is not None:
                target_ids: Sequence[str] = message.get("targetIds") or ()
                if self.session_id in target_ids:
                    handler(self, message)
                    handled = True
            handler = PID_HANDLERS.get(action)
            if handler is not None and message.get("pid") == self.session_id:
                handler(self, message)
                handled = True
        event = message.get("type")
        if event in (FOCUS_EVENT, BLUR_EVENT) and self.target.is_active():
            if event == FOCUS_EVENT:
                self.target.focus()
            else:
                self.target.blur()
            handled = True
        return handled


class ShortcutContext:
    """A context menu opened by one session and the action it may invoke."""

    def __init__(
        self,
        channel: MessageChannel,
        *,
        owner_id: str,
        actions: Mapping[str, Callable[..., Any]],
    ) -> None:
        self.channel = channel
        self.owner_id = owner_id
        self.actions = actions
        self.pending_id: str | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def open(
        self,
        items: Sequence[Mapping[str, Any]],
        position: Mapping[str, Any] | None = None,
    ) -> str:
        """Announce a menu and wait for the matching click."""

        self.clear()
        menu_id = uuid.uuid4().hex
        self.pending_id = menu_id
        self._unsubscribe = self.channel.subscribe(self._on_message)
        self.channel.post(
            {
                "action": TerminalAction.OPEN_CONTEXT_MENU.value,
                "id": menu_id,
                "pid": self.owner_id,
                "items": list(items),
                "pos": dict(position or {}),
            }
        )
        return menu_id

    def clear(self) -> None:
        self.pending_id = None
        unsubscribe = self._unsubscribe
        self._unsubscribe = None
        if unsubscribe is not None:
            unsubscribe()

    def _on_message(self, message: Message) -> None:
        action = _parse_action(message.get("action"))
        if action is TerminalAction.CLOSE_CONTEXT_MENU_AFTER:
            self.clear()
            return
        if action is not TerminalAction.CLICK_CONTEXT_MENU:
            return
        if self.pending_id is None or message.get("id") != self.pending_id:
            return
        callback = self.actions.get(str(message.get("func", "")))
        if callback is None:
            return
        self.clear()
        callback(*message.get("args", ()))


__all__ = [
    "BLUR_EVENT",
    "FOCUS_EVENT",
    "GatewayTarget",
    "Message",
    "MessageChannel",
    "MessagingGateway",
    "PID_HANDLERS",
    "ShortcutContext",
    "TARGETED_HANDLERS",
    "TerminalAction",
]
