"""Collaborator interfaces for the terminal UI plus console implementations."""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
import sys
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Mapping, Protocol, Sequence, TextIO, Tuple


logger = logging.getLogger(__name__)


CLOSE_ACTION = "close"
RELOAD_ACTION = "reload"


@dataclass(frozen=True)
class CloseWarning:
    """User-facing notice raised when a foreground session drops."""

    key: str
    message: str
    actions: Tuple[str, ...] = (CLOSE_ACTION, RELOAD_ACTION)


class TerminalSurface(Protocol):
    """The rendering surface a session writes to."""

    @property
    def is_alternate_buffer(self) -> bool:
        ...

    @property
    def size(self) -> Tuple[int, int]:
        ...

    def write(self, text: str) -> None:
        ...

    def focus(self) -> None:
        ...

    def blur(self) -> None:
        ...

    def clear(self) -> None:
        ...

    def zoom(self, delta: float) -> None:
        ...

    def get_selection(self) -> str:
        ...

    def copy_to_clipboard(self, text: str) -> None:
        ...

    def read_clipboard(self) -> str:
        ...

    def toggle_search(self) -> None:
        ...

    def find_next(self, keyword: str, options: Mapping[str, Any]) -> bool:
        ...

    def find_previous(self, keyword: str, options: Mapping[str, Any]) -> bool:
        ...

    def clear_search(self) -> None:
        ...

    def show_info(self, info: Mapping[str, Any]) -> None:
        ...


class TransferPrompts(Protocol):
    """Local choices a file transfer needs from the user."""

    async def choose_save_directory(self) -> str | None:
        ...

    async def choose_files_to_send(self) -> Sequence[str]:
        ...


class SessionNotifier(Protocol):
    """Surfaces session failures to the user."""

    def notify_error(self, message: str) -> None:
        ...

    def show_close_warning(self, warning: CloseWarning) -> None:
        ...

    def dismiss(self, key: str) -> None:
        ...


_ALT_BUFFER = re.compile(r"\x1b\[\?(?:1049|1047|47)([hl])")


class StreamSurface:
    """:class:`TerminalSurface` that writes straight to a text stream."""

    def __init__(
        self,
        stream: TextIO | None = None,
        *,
        size: Tuple[int, int] = (80, 24),
        scrollback: int = 2000,
    ) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self._size = size
        self._lines: Deque[str] = deque(maxlen=scrollback)
        self._partial = ""
        self._alternate = False
        self._search_index: int | None = None
        self._clipboard = ""
        self.focused = True
        self.font_size = 14.0

    @property
    def is_alternate_buffer(self) -> bool:
        return self._alternate

    @property
    def size(self) -> Tuple[int, int]:
        return self._size

    def write(self, text: str) -> None:
        if not text:
            return
        for match in _ALT_BUFFER.finditer(text):
            self._alternate = match.group(1) == "h"
        self.stream.write(text)
        self.stream.flush()
        pieces = (self._partial + text).split("\n")
        self._partial = pieces.pop()
        self._lines.extend(pieces)

    def focus(self) -> None:
        self.focused = True

    def blur(self) -> None:
        self.focused = False

    def clear(self) -> None:
        self._lines.clear()
        self._partial = ""
        self.stream.write("\x1b[2J\x1b[H")
        self.stream.flush()

    def zoom(self, delta: float) -> None:
        self.font_size += delta
        logger.debug("font size now %.1f", self.font_size)

    def get_selection(self) -> str:
        return ""

    def copy_to_clipboard(self, text: str) -> None:
        self._clipboard = text

    def read_clipboard(self) -> str:
        return self._clipboard

    def toggle_search(self) -> None:
        self._search_index = None

    def find_next(self, keyword: str, options: Mapping[str, Any]) -> bool:
        return self._find(keyword, options, step=1)

    def find_previous(self, keyword: str, options: Mapping[str, Any]) -> bool:
        return self._find(keyword, options, step=-1)

    def clear_search(self) -> None:
        self._search_index = None

    def show_info(self, info: Mapping[str, Any]) -> None:
        body = "\r\n".join(f"{key}: {value}" for key, value in info.items())
        self.stream.write(f"\r\n{body}\r\n")
        self.stream.flush()

    def _find(self, keyword: str, options: Mapping[str, Any], *, step: int) -> bool:
        if not keyword or not self._lines:
            return False
        case_sensitive = bool(options.get("caseSensitive"))
        needle = keyword if case_sensitive else keyword.lower()
        lines = list(self._lines)
        count = len(lines)
        current = self._search_index
        if current is None:
            current = -1 if step > 0 else count
        for offset in range(1, count + 1):
            index = (current + step * offset) % count
            haystack = lines[index] if case_sensitive else lines[index].lower()
            if needle in haystack:
                self._search_index = index
                return True
        return False


class ConsolePrompts:
    """:class:`TransferPrompts` answered by lines the console loop hands over.

    The console input loop offers every line to :meth:`feed_line` first; a
    line is consumed only while a question is pending.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream if stream is not None else sys.stderr
        self._pending: asyncio.Future[str] | None = None

    @property
    def waiting(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def feed_line(self, line: str) -> bool:
        pending = self._pending
        if pending is None or pending.done():
            return False
        pending.set_result(line.strip())
        return True

    async def choose_save_directory(self) -> str | None:
        answer = await self._ask("Save received files to directory (blank cancels): ")
        return answer or None

    async def choose_files_to_send(self) -> Sequence[str]:
        answer = await self._ask("Files to send (blank cancels): ")
        return shlex.split(answer) if answer else []

    async def _ask(self, prompt: str) -> str:
        self.stream.write(prompt)
        self.stream.flush()
        self._pending = asyncio.get_running_loop().create_future()
        try:
            return await self._pending
        finally:
            self._pending = None


class LoggingNotifier:
    """:class:`SessionNotifier` that reports through :mod:`logging`."""

    def __init__(self) -> None:
        self.warnings: dict[str, CloseWarning] = {}

    def notify_error(self, message: str) -> None:
        logger.error("%s", message)

    def show_close_warning(self, warning: CloseWarning) -> None:
        self.warnings[warning.key] = warning
        logger.warning("%s (actions: %s)", warning.message, ", ".join(warning.actions))

    def dismiss(self, key: str) -> None:
        self.warnings.pop(key, None)


__all__ = [
    "CLOSE_ACTION",
    "CloseWarning",
    "ConsolePrompts",
    "LoggingNotifier",
    "RELOAD_ACTION",
    "SessionNotifier",
    "StreamSurface",
    "TerminalSurface",
    "TransferPrompts",
]
