"""Client for the service that allocates and resizes remote terminals."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Protocol

import aiohttp

from ..config import (
    TAB_TYPE_LOCAL,
    TAB_TYPE_REMOTE,
    TAB_TYPE_SSH_CONFIG,
    ClientConfig,
    TabConfig,
)
from ..session import ConnectionFailure


logger = logging.getLogger(__name__)


class RemoteSessionClient(Protocol):
    """Allocates terminals on the session server."""

    async def create_session(self, options: Mapping[str, Any]) -> str:
        ...

    async def resize_session(
        self, remote_id: str, session_id: str, cols: int, rows: int
    ) -> None:
        ...


def resolve_proxy(tab: TabConfig, client: ClientConfig) -> str:
    """Return the tab's proxy, else the global one when it is enabled."""

    if tab.proxy:
        return tab.proxy
    if client.enable_global_proxy:
        return client.proxy
    return ""


def _tab_fields(tab: TabConfig) -> Dict[str, Any]:
    return {
        "id": tab.id,
        "title": tab.title,
        "host": tab.host,
        "port": tab.port,
        "type": tab.type,
        "term": tab.term,
        "encode": tab.encode,
        "startDirectory": tab.start_directory,
        "runScripts": [
            {"script": item.script, "delay": item.delay} for item in tab.run_scripts
        ],
        "enableSsh": tab.enable_ssh,
        "displayRaw": tab.display_raw,
    }


def build_session_options(
    client: ClientConfig,
    tab: TabConfig,
    *,
    cols: int,
    rows: int,
) -> Dict[str, Any]:
    """Compute the ``create_session`` payload for ``tab``."""

    is_ssh_config = tab.type == TAB_TYPE_SSH_CONFIG
    options: Dict[str, Any] = {
        "cols": cols,
        "rows": rows,
        "saveTerminalLogToFile": client.save_terminal_log_to_file,
    }
    options.update(_tab_fields(tab))
    options["term"] = tab.term or client.terminal_type
    options.update(tab.extra)
    options.update(
        {
            "logName": tab.log_name or tab.id,
            "addTimeStampToTermLog": client.add_timestamp_to_term_log,
            "keepaliveCountMax": client.keepalive_count_max,
            "execWindows": client.exec_windows,
            "execMac": client.exec_mac,
            "execLinux": client.exec_linux,
            "execWindowsArgs": list(client.exec_windows_args),
            "execMacArgs": list(client.exec_mac_args),
            "execLinuxArgs": list(client.exec_linux_args),
            "debug": client.debug,
            "keepaliveInterval": (
                client.keepalive_interval
                if tab.keepalive_interval is None
                else tab.keepalive_interval
            ),
            "sessionId": client.session_id,
            "tabId": tab.id,
            "uid": tab.id,
            "srcTabId": tab.id,
            "termType": TAB_TYPE_LOCAL if is_ssh_config else tab.type,
            "readyTimeout": client.ssh_ready_timeout,
            "proxy": resolve_proxy(tab, client),
            "type": TAB_TYPE_REMOTE if tab.is_remote else TAB_TYPE_LOCAL,
        }
    )
    return options


class HttpRemoteSessionClient:
    """:class:`RemoteSessionClient` speaking the session server's HTTP API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        http: aiohttp.ClientSession | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._http = http
        self._owns_http = http is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=self._timeout)
        return self._http

    async def create_session(self, options: Mapping[str, Any]) -> str:
        url = f"{self.base_url}/terminals"
        try:
            async with self._session().post(
                url, json=dict(options), headers={"token": self.token}
            ) as response:
                body = (await response.text()).strip()
                status = response.status
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise ConnectionFailure(f"cannot reach {url}: {exc}") from exc
        if status >= 400:
            raise ConnectionFailure(f"session server returned {status}: {body}")
        if "fail" in body:
            raise ConnectionFailure(f"session server refused the session: {body}")
        logger.debug("created remote session %s", body)
        return body

    async def resize_session(
        self, remote_id: str, session_id: str, cols: int, rows: int
    ) -> None:
        url = f"{self.base_url}/terminals/{remote_id}/size"
        params = {"cols": str(cols), "rows": str(rows), "sessionId": session_id}
        try:
            async with self._session().post(
                url, params=params, headers={"token": self.token}
            ) as response:
                if response.status >= 400:
                    raise ConnectionFailure(
                        f"resize of {remote_id} returned {response.status}"
                    )
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise ConnectionFailure(f"cannot resize {remote_id}: {exc}") from exc

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            http = self._http
            self._http = None
            await http.close()


__all__ = [
    "HttpRemoteSessionClient",
    "RemoteSessionClient",
    "build_session_options",
    "resolve_proxy",
]
