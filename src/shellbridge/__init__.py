"""Public shellbridge API: configuration, session state and the runtime."""
from __future__ import annotations

from typing import Any

from . import config as _config
from . import runtime as _runtime
from . import session as _session

__all__: list[str] = []
for _module in (_config, _session, _runtime):
    for _name in getattr(_module, "__all__", ()):  # pragma: no branch - data-driven
        globals()[_name] = getattr(_module, _name)
        if _name not in __all__:
            __all__.append(_name)


def __getattr__(name: str) -> Any:
    return getattr(_runtime, name)


def __dir__() -> list[str]:
    return sorted(set(__all__) | set(dir(_runtime)))
