from __future__ import annotations

from pathlib import Path

import pytest

from shellbridge.config import (
    TAB_TYPE_SSH_CONFIG,
    ClientConfig,
    ConfigError,
    PendingScript,
    load_config,
    parse_config,
    parse_tab,
)


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "shellbridge.toml"
    path.write_text(body, encoding="utf-8")
    return path


# Why: a complete file populates both the client table and every tab entry.
def test_load_config_reads_client_and_tabs(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
[client]
host = "10.0.0.5"
port = 4000
token = "secret"
keepalive_interval = 15000
exec_linux_args = ["-l"]
progress_interval = 1

[[tabs]]
id = "tab-1"
title = "prod box"
host = "prod.example"
type = "remote"
start_directory = "/srv"
color = "red"
run_scripts = [{ script = "ls", delay = 100 }, { script = "pwd" }]

[[tabs]]
id = "tab-2"
""",
    )

    client, tabs = load_config(path)

    assert client.host == "10.0.0.5"
    assert client.port == 4000
    assert client.token == "secret"
    assert client.exec_linux_args == ("-l",)
    assert client.progress_interval == 1.0
    assert client.base_url == "http://10.0.0.5:4000"
    assert list(tabs) == ["tab-1", "tab-2"]
    first = tabs["tab-1"]
    assert first.is_remote
    assert first.start_directory == "/srv"
    assert first.extra == {"color": "red"}
    assert first.run_scripts == (PendingScript("ls", 100), PendingScript("pwd", 0))
    assert not tabs["tab-2"].is_remote


def test_base_url_prefers_explicit_server() -> None:
    client = ClientConfig(server="https://gateway.example/")

    assert client.base_url == "https://gateway.example"


def test_ssh_config_tab_is_never_remote() -> None:
    tab = parse_tab({"id": "t", "host": "jump", "type": TAB_TYPE_SSH_CONFIG})

    assert not tab.is_remote


@pytest.mark.parametrize(
    "data, message",
    [
        ({"client": {"port": "22"}}, "client.port must be an integer"),
        ({"client": {"colour": 1}}, "unknown [client] keys: colour"),
        ({"client": {"zmodem_chunk_size": 0}}, "zmodem_chunk_size must be positive"),
        ({"tabs": [{"title": "no id"}]}, "requires a non-empty string id"),
        ({"tabs": [{"id": "a"}, {"id": "a"}]}, "duplicate tab id 'a'"),
        ({"tabs": [{"id": "a", "type": "serial"}]}, "type must be one of"),
        (
            {"tabs": [{"id": "a", "run_scripts": [{"script": "ls", "delay": -1}]}]},
            "delay must be a non-negative integer",
        ),
    ],
)
def test_parse_config_rejects_invalid_values(data, message: str) -> None:
    with pytest.raises(ConfigError) as excinfo:
        parse_config(data)

    assert message in str(excinfo.value)


def test_tab_keepalive_interval_defaults_to_none() -> None:
    _, tabs = parse_config({"tabs": [{"id": "a"}, {"id": "b", "keepalive_interval": 5}]})

    assert tabs["a"].keepalive_interval is None
    assert tabs["b"].keepalive_interval == 5
