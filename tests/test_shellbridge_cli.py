from __future__ import annotations

import asyncio
import io
import threading
from pathlib import Path

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from shellbridge.config import ClientConfig, ConfigError, TabConfig
from shellbridge.runtime.cli import (
    apply_overrides,
    main,
    parse_args,
    run_session,
    select_tab,
)


def _write_config(tmp_path: Path, body: str = "") -> Path:
    path = tmp_path / "shellbridge.toml"
    path.write_text(
        '[client]\nsession_id = "cli"\ntoken = "tok"\n\n[[tabs]]\nid = "main"\n' + body,
        encoding="utf-8",
    )
    return path


def test_parse_args_defaults_and_overrides(tmp_path: Path) -> None:
    path = tmp_path / "c.toml"

    defaults = parse_args(["--config", str(path)])
    custom = parse_args(
        ["--config", str(path), "--tab", "t2", "--host", "gw", "--port", "8080"]
        + ["--log-level", "DEBUG"]
    )

    assert defaults.config == path
    assert defaults.tab is None and defaults.host is None and defaults.port is None
    assert defaults.log_level == "WARNING"
    assert (custom.tab, custom.host, custom.port, custom.log_level) == ("t2", "gw", 8080, "DEBUG")


def test_parse_args_requires_config() -> None:
    with pytest.raises(SystemExit):
        parse_args([])


def test_apply_overrides_replaces_only_given_fields(tmp_path: Path) -> None:
    client = ClientConfig(host="a", port=1, token="t")

    unchanged = apply_overrides(client, parse_args(["--config", "x"]))
    moved = apply_overrides(client, parse_args(["--config", "x", "--port", "9"]))

    assert unchanged is client
    assert moved == ClientConfig(host="a", port=9, token="t")


def test_select_tab_defaults_to_first_and_rejects_unknown_ids() -> None:
    tabs = {"a": TabConfig(id="a"), "b": TabConfig(id="b")}

    assert select_tab(tabs, None).id == "a"
    assert select_tab(tabs, "b").id == "b"
    with pytest.raises(ConfigError, match="no tab with id 'c'"):
        select_tab(tabs, "c")
    with pytest.raises(ConfigError):
        select_tab({}, None)


def test_main_reports_configuration_errors(tmp_path: Path) -> None:
    path = _write_config(tmp_path)

    assert main(["--config", str(path), "--tab", "missing"]) == 2


class _GatedStdin:
    """Hands out lines once the matching event fires, then reports EOF."""

    def __init__(self, steps: list[tuple[threading.Event, str]]) -> None:
        self._steps = list(steps)

    def readline(self) -> str:
        if not self._steps:
            return ""
        event, line = self._steps.pop(0)
        event.wait(5.0)
        return line


class _WatchedStdout(io.StringIO):
    def __init__(self, marker: str, seen: threading.Event) -> None:
        super().__init__()
        self._marker = marker
        self._seen = seen

    def write(self, text: str) -> int:
        count = super().write(text)
        if self._marker in self.getvalue():
            self._seen.set()
        return count


# Why: the console loop must carry a typed line to the socket and show server output.
def test_run_session_bridges_console_and_socket(tmp_path: Path) -> None:
    created: list[dict] = []
    typed: list[bytes] = []
    welcomed = threading.Event()
    received = threading.Event()

    async def _create(request: web.Request) -> web.Response:
        created.append(await request.json())
        return web.Response(text="77")

    async def _terminal(request: web.Request) -> web.WebSocketResponse:
        assert request.match_info["remote_id"] == "77"
        assert request.query["token"] == "tok"
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_bytes(b"welcome\r\n")
        async for message in ws:
            if message.type == WSMsgType.BINARY:
                typed.append(message.data)
                received.set()
        return ws

    stdin = _GatedStdin([(welcomed, "echo hi\n"), (received, "")])
    stdout = _WatchedStdout("welcome", welcomed)

    async def _exercise() -> int:
        app = web.Application()
        app.router.add_post("/terminals", _create)
        app.router.add_get("/terminals/{remote_id}", _terminal)
        server = TestServer(app)
        await server.start_server()
        try:
            path = _write_config(tmp_path)
            args = parse_args(
                ["--config", str(path), "--host", "127.0.0.1", "--port", str(server.port)]
            )
            return await run_session(args, stdin=stdin, stdout=stdout)
        finally:
            await server.close()

    assert asyncio.run(_exercise()) == 0
    assert created[0]["sessionId"] == "cli"
    assert created[0]["tabId"] == "main"
    assert typed == [b"echo hi\r"]
    assert "welcome\r\n" in stdout.getvalue()


def test_run_session_returns_error_code_when_creation_fails(tmp_path: Path) -> None:
    async def _exercise() -> int:
        server = TestServer(web.Application())
        await server.start_server()
        try:
            path = _write_config(tmp_path)
            args = parse_args(
                ["--config", str(path), "--host", "127.0.0.1", "--port", str(server.port)]
            )
            return await run_session(args, stdin=io.StringIO(""), stdout=io.StringIO())
        finally:
            await server.close()

    assert asyncio.run(_exercise()) == 1
