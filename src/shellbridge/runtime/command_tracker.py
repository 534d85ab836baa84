"""Track typed commands and follow the remote shell's working directory."""

from __future__ import annotations

import logging
import re
import uuid
from enum import Enum
from typing import Callable

from .timers import Debounce, TimerGroup


logger = logging.getLogger(__name__)

EXIT_COMMANDS = frozenset({"exit", "logout"})
BACKSPACES = frozenset({"\b", "\x7f"})

_ESCAPE_SEQUENCE = re.compile(r"\x1b(?:\[[0-9;?]*[ -/]*[@-~]|O.|.)", re.DOTALL)
_PATH_LIKE = re.compile(r"^(?:/|~|[A-Za-z]:[\\/])")

# An opening sentinel without its partner is flushed to the display past this size.
_MAX_CARRY = 4096


class ShellFamily(Enum):
    """Shells whose prompt variable can carry the cwd sentinel.

    Each value is the pattern ``grep`` applies to ``$0`` to select the family.
    """

    CSH = "csh"
    ZSH = "zsh"
    ASH = "ash"
    KSH = "ksh"
    SH = "'^sh'"


def make_sentinel() -> str:
    return f"-=cwd{uuid.uuid4().hex[:8]}=-"


def _guard(family: ShellFamily) -> str:
    return f"echo $0|grep {family.value} >/dev/null && "


def _install_line(family: ShellFamily, sentinel: str) -> str:
    if family is ShellFamily.CSH:
        return (
            f'set prompt_bak="$prompt" && '
            f'set prompt="$prompt{sentinel}%/{sentinel}"'
        )
    if family is ShellFamily.ZSH:
        return f"PS1_bak=$PS1&&PS1=$PS1'{sentinel}%d{sentinel}'"
    return f"PS1_bak=$PS1&&PS1=$PS1'`echo {sentinel}$PWD{sentinel}`'"


def _restore_line(family: ShellFamily) -> str:
    if family is ShellFamily.CSH:
        return 'set prompt="$prompt_bak"'
    return 'PS1="$PS1_bak"'


def _script(lines: list[str]) -> str:
    return "\r" + "".join(line + "\r\n" for line in lines) + "clear\r"


def build_prompt_install(sentinel: str) -> str:
    """Commands that append the sentinel-wrapped cwd to the shell prompt."""

    return _script([_guard(family) + _install_line(family, sentinel) for family in ShellFamily])


def build_prompt_restore() -> str:
    """Commands that put the prompt saved by :func:`build_prompt_install` back."""

    return _script([_guard(family) + _restore_line(family) for family in ShellFamily])


class CommandTracker:
    """Passive observer of user keystrokes and terminal output.

    Keystrokes build up the current command line. A carriage return completes
    it: ``exit`` or ``logout`` arms :attr:`user_typed_exit` for a short grace
    window, anything else schedules a cwd probe. Output is scanned for the
    sentinel pairs the probe installs into the prompt.
    """

    def __init__(
        self,
        *,
        timers: TimerGroup,
        send: Callable[[str], None],
        is_alternate_buffer: Callable[[], bool],
        on_cwd: Callable[[str], None] | None = None,
        cwd_tracking: bool = False,
        probe_delay: float = 0.2,
        exit_grace: float = 2.0,
        sentinel: str | None = None,
    ) -> None:
        self._timers = timers
        self._send = send
        self._is_alternate_buffer = is_alternate_buffer
        self._on_cwd = on_cwd
        self.exit_grace = exit_grace
        self.sentinel = sentinel or make_sentinel()
        self.cwd_tracking = cwd_tracking
        self.installed = False
        self.user_typed_exit = False
        self.last_command = ""
        self.cwd: str | None = None
        self._buffer: list[str] = []
        self._carry = ""
        self._probe = Debounce(probe_delay, self.probe_cwd, timers, name="cwd_probe")

    @property
    def current_command(self) -> str:
        return "".join(self._buffer)

    # Keystrokes ---------------------------------------------------------

    def feed(self, data: str) -> None:
        """Account for a chunk of user input."""

        if "\r" not in data:
            self._disarm_exit()
        for char in _ESCAPE_SEQUENCE.sub("", data):
            if char == "\r":
                self._commit()
            elif char in BACKSPACES:
                if self._buffer:
                    self._buffer.pop()
            elif char == "\t" or char >= " ":
                self._buffer.append(char)

    def _commit(self) -> None:
        self.last_command = self.current_command
        self._buffer.clear()
        command = self.last_command.strip()
        if command in EXIT_COMMANDS:
            logger.debug("user typed %r; arming exit grace window", command)
            self.user_typed_exit = True
            self._timers.call_later("user_typed_exit", self.exit_grace, self._expire_exit)
            return
        if not self._is_alternate_buffer():
            self._probe()

    def _expire_exit(self) -> None:
        self.user_typed_exit = False

    def _disarm_exit(self) -> None:
        if self.user_typed_exit:
            self.user_typed_exit = False
            self._timers.cancel("user_typed_exit")

    # Working directory --------------------------------------------------

    def probe_cwd(self) -> None:
        """Install the prompt sentinel once tracking is on and the shell is idle."""

        if not self.cwd_tracking or self.installed or self._is_alternate_buffer():
            return
        self.installed = True
        logger.debug("installing cwd prompt sentinel %s", self.sentinel)
        self._send(build_prompt_install(self.sentinel))

    def reset(self) -> None:
        """Forget per-shell state once the connection behind it is gone."""

        self._probe.cancel()
        self._disarm_exit()
        self.installed = False
        self.user_typed_exit = False
        self.last_command = ""
        self.cwd = None
        self._buffer.clear()
        self._carry = ""

    def set_cwd_tracking(self, enabled: bool) -> None:
        if enabled == self.cwd_tracking:
            return
        self.cwd_tracking = enabled
        if enabled:
            self.installed = True
            self._send(build_prompt_install(self.sentinel))
        else:
            self.installed = False
            self._carry = ""
            self._send(build_prompt_restore())

    def scan_output(self, text: str) -> str:
        """Strip sentinel pairs from ``text`` and report the paths they carry."""

        if not self.installed and not self._carry:
            return text
        sentinel = self.sentinel
        text = self._carry + text
        self._carry = ""
        pieces: list[str] = []
        position = 0
        while True:
            start = text.find(sentinel, position)
            if start < 0:
                keep = _partial_suffix(text, position, sentinel)
                pieces.append(text[position : len(text) - keep])
                self._carry = text[len(text) - keep :]
                break
            end = text.find(sentinel, start + len(sentinel))
            if end < 0:
                pieces.append(text[position:start])
                self._carry = text[start:]
                if len(self._carry) > _MAX_CARRY:
                    pieces.append(self._carry)
                    self._carry = ""
                break
            pieces.append(text[position:start])
            self._report(text[start + len(sentinel) : end])
            position = end + len(sentinel)
        return "".join(pieces)

    def _report(self, value: str) -> None:
        # The shell echoes the install commands too; only real paths count.
        if not _PATH_LIKE.match(value) or value == self.cwd:
            return
        self.cwd = value
        logger.debug("remote cwd is now %s", value)
        if self._on_cwd is not None:
            self._on_cwd(value)


def _partial_suffix(text: str, start: int, sentinel: str) -> int:
    limit = min(len(sentinel) - 1, len(text) - start)
    for size in range(limit, 0, -1):
        if sentinel.startswith(text[len(text) - size :]):
            return size
    return 0


__all__ = [
    "BACKSPACES",
    "CommandTracker",
    "EXIT_COMMANDS",
    "ShellFamily",
    "build_prompt_install",
    "build_prompt_restore",
    "make_sentinel",
]
