"""Runtime modules exposed by the shellbridge package."""
from __future__ import annotations

from typing import Any

from . import cli as _cli
from . import command_tracker as _command_tracker
from . import console_ui as _console_ui
from . import file_access as _file_access
from . import file_transfer_protocols as _file_transfer_protocols
from . import file_transfers as _file_transfers
from . import messaging as _messaging
from . import remote_sessions as _remote_sessions
from . import session_controller as _session_controller
from . import timers as _timers
from . import transfer_detection as _transfer_detection
from . import transports as _transports

_modules = [
    _cli,
    _command_tracker,
    _console_ui,
    _file_access,
    _file_transfer_protocols,
    _file_transfers,
    _messaging,
    _remote_sessions,
    _session_controller,
    _timers,
    _transfer_detection,
    _transports,
]

__all__: list[str] = []
_seen: set[str] = set()
for _module in _modules:
    for _name in _module.__all__:
        if _name not in _seen:
            _seen.add(_name)
            __all__.append(_name)
        globals()[_name] = getattr(_module, _name)


def __getattr__(name: str) -> Any:
    for _module in _modules:
        if hasattr(_module, name):
            return getattr(_module, name)
    raise AttributeError(name)


def __dir__() -> list[str]:
    return sorted(__all__)
