"""Configuration helpers for terminal sessions and their tabs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

import tomllib


TAB_TYPE_LOCAL = "local"
TAB_TYPE_REMOTE = "remote"
TAB_TYPE_SSH_CONFIG = "ssh-config"

_TAB_TYPES = frozenset({TAB_TYPE_LOCAL, TAB_TYPE_REMOTE, TAB_TYPE_SSH_CONFIG})


class ConfigError(ValueError):
    """Raised when a session configuration file fails validation."""


@dataclass(frozen=True)
class PendingScript:
    """A startup command sent once ``delay`` milliseconds have elapsed."""

    script: str
    delay: int = 0


@dataclass(frozen=True)
class ClientConfig:
    """Client-wide settings shared by every session."""

    host: str = "127.0.0.1"
    port: int = 30975
    server: str = ""
    token: str = ""
    session_id: str = ""
    terminal_type: str = "xterm-256color"
    keepalive_interval: int = 0
    keepalive_count_max: int = 10
    ssh_ready_timeout: int = 50000
    exec_windows: str = ""
    exec_mac: str = ""
    exec_linux: str = ""
    exec_windows_args: Tuple[str, ...] = ()
    exec_mac_args: Tuple[str, ...] = ()
    exec_linux_args: Tuple[str, ...] = ()
    enable_global_proxy: bool = False
    proxy: str = ""
    save_terminal_log_to_file: bool = False
    add_timestamp_to_term_log: bool = False
    sftp_path_follow_ssh: bool = False
    init_folder: str = ""
    zmodem_chunk_size: int = 8192
    transfer_reply_timeout: float = 30.0
    resize_interval: float = 0.2
    progress_interval: float = 0.5
    cwd_probe_delay: float = 0.2
    exit_grace: float = 2.0
    debug: bool = False

    @property
    def base_url(self) -> str:
        """Return the HTTP base URL of the session server."""

        if self.server:
            return self.server.rstrip("/")
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class TabConfig:
    """Per-tab connection settings."""

    id: str
    title: str = ""
    host: str = ""
    port: int = 22
    type: str = TAB_TYPE_LOCAL
    term: str = ""
    encode: str = "utf-8"
    keepalive_interval: int | None = None
    start_directory: str = ""
    run_scripts: Tuple[PendingScript, ...] = ()
    proxy: str = ""
    enable_ssh: bool = True
    display_raw: bool = False
    log_name: str = ""
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_remote(self) -> bool:
        return bool(self.host) and self.type != TAB_TYPE_SSH_CONFIG


def load_config(config_path: Path) -> Tuple[ClientConfig, Dict[str, TabConfig]]:
    """Parse and validate the configuration at ``config_path``."""

    with config_path.open("rb") as stream:
        raw_data = tomllib.load(stream)
    return parse_config(raw_data)


def parse_config(data: Mapping[str, Any]) -> Tuple[ClientConfig, Dict[str, TabConfig]]:
    """Build configuration objects from already-decoded TOML ``data``."""

    client_table = data.get("client", {})
    if not isinstance(client_table, Mapping):
        raise ConfigError("[client] section must be a mapping")
    client = _parse_client(client_table)

    entries = data.get("tabs", [])
    if not isinstance(entries, list):
        raise ConfigError("[[tabs]] must be an array of tables")
    tabs: Dict[str, TabConfig] = {}
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, Mapping):
            raise ConfigError(
                f"tab entry #{index} must be a mapping, received {type(entry)!r}"
            )
        tab = parse_tab(entry, index=index)
        if tab.id in tabs:
            raise ConfigError(f"duplicate tab id {tab.id!r}")
        tabs[tab.id] = tab
    return client, tabs


def _parse_client(table: Mapping[str, Any]) -> ClientConfig:
    known = {name for name in ClientConfig.__dataclass_fields__}
    unknown = sorted(set(table) - known)
    if unknown:
        raise ConfigError(f"unknown [client] keys: {', '.join(unknown)}")
    values: Dict[str, Any] = {}
    for name, value in table.items():
        default = ClientConfig.__dataclass_fields__[name].default
        values[name] = _coerce(f"client.{name}", value, default)
    client = ClientConfig(**values)
    if client.zmodem_chunk_size <= 0:
        raise ConfigError("client.zmodem_chunk_size must be positive")
    return client


def parse_tab(entry: Mapping[str, Any], *, index: int = 1) -> TabConfig:
    """Build a :class:`TabConfig` from a single ``[[tabs]]`` table."""

    tab_id = entry.get("id")
    if not isinstance(tab_id, str) or not tab_id:
        raise ConfigError(f"tab entry #{index} requires a non-empty string id")
    known = set(TabConfig.__dataclass_fields__) - {"extra", "run_scripts"}
    values: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for name, value in entry.items():
        if name == "run_scripts":
            continue
        if name in known:
            default = TabConfig.__dataclass_fields__[name].default
            values[name] = _coerce(f"tabs[{index}].{name}", value, default)
        else:
            extra[name] = value
    tab_type = values.get("type", TAB_TYPE_LOCAL)
    if tab_type not in _TAB_TYPES:
        raise ConfigError(f"tabs[{index}].type must be one of {sorted(_TAB_TYPES)}")
    scripts = _parse_run_scripts(entry.get("run_scripts", []), index=index)
    return TabConfig(run_scripts=scripts, extra=extra, **values)


def _parse_run_scripts(entries: Any, *, index: int) -> Tuple[PendingScript, ...]:
    if not isinstance(entries, list):
        raise ConfigError(f"tabs[{index}].run_scripts must be an array")
    scripts: list[PendingScript] = []
    for position, item in enumerate(entries, start=1):
        if not isinstance(item, Mapping):
            raise ConfigError(f"tabs[{index}].run_scripts[{position}] must be a table")
        script = item.get("script", "")
        delay = item.get("delay", 0)
        if not isinstance(script, str):
            raise ConfigError(f"tabs[{index}].run_scripts[{position}].script must be a string")
        if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
            raise ConfigError(
                f"tabs[{index}].run_scripts[{position}].delay must be a non-negative integer"
            )
        scripts.append(PendingScript(script=script, delay=delay))
    return tuple(scripts)


def _coerce(key: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be a boolean")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{key} must be a number")
        return float(value)
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer")
        return value
    if isinstance(default, tuple):
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{key} must be an array of strings")
        return tuple(value)
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigError(f"{key} must be a string")
        return value
    # ``keepalive_interval`` on tabs defaults to ``None``.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


__all__ = [
    "ClientConfig",
    "ConfigError",
    "PendingScript",
    "TAB_TYPE_LOCAL",
    "TAB_TYPE_REMOTE",
    "TAB_TYPE_SSH_CONFIG",
    "TabConfig",
    "load_config",
    "parse_config",
    "parse_tab",
]
