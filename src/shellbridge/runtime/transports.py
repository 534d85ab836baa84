"""Byte bridge between a terminal surface and a remote session socket."""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections import deque
from typing import Callable, Deque, Protocol
from urllib.parse import urlencode, urlsplit

import aiohttp

from ..session import ConnectionFailure, TransportClosed
from .console_ui import TerminalSurface


logger = logging.getLogger(__name__)

MessageCallback = Callable[[bytes], None]
CloseCallback = Callable[[], None]
ErrorCallback = Callable[[BaseException], None]
Interceptor = Callable[[bytes], bytes]
TextFilter = Callable[[str], str]


class Transport(Protocol):
    """Message-oriented duplex connection to a remote terminal."""

    @property
    def closed(self) -> bool:
        ...

    async def open(self) -> None:
        ...

    async def send(self, data: bytes) -> None:
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[str, MessageCallback, CloseCallback, ErrorCallback], Transport]


def build_terminal_url(
    *,
    host: str,
    port: int,
    server: str,
    remote_id: str,
    session_id: str,
    token: str,
) -> str:
    """Return the socket URL for ``remote_id``.

    ``server`` wins over ``host``/``port`` when set; an ``https`` server selects
    a secure socket.
    """

    if server:
        parts = urlsplit(server)
        location = (parts.netloc + parts.path).rstrip("/") or server
        scheme = "wss" if parts.scheme == "https" else "ws"
    else:
        location = f"{host}:{port}"
        scheme = "ws"
    query = urlencode({"sessionId": session_id, "token": token})
    return f"{scheme}://{location}/terminals/{remote_id}?{query}"


class WebSocketTransport:
    """:class:`Transport` over an aiohttp WebSocket."""

    def __init__(
        self,
        url: str,
        on_message: MessageCallback,
        on_close: CloseCallback,
        on_error: ErrorCallback,
        *,
        http: aiohttp.ClientSession | None = None,
        heartbeat: float | None = None,
    ) -> None:
        self.url = url
        self._on_message = on_message
        self._on_close = on_close
        self._on_error = on_error
        self._http = http
        self._owns_http = http is None
        self._heartbeat = heartbeat
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed

    async def open(self) -> None:
        if self._ws is not None:
            return
        if self._http is None:
            self._http = aiohttp.ClientSession()
        try:
            self._ws = await self._http.ws_connect(self.url, heartbeat=self._heartbeat)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            await self._close_http()
            raise ConnectionFailure(f"cannot open {self.url}: {exc}") from exc
        logger.info("socket open: %s", self.url)
        self._reader = asyncio.get_running_loop().create_task(self._pump())

    async def send(self, data: bytes) -> None:
        ws = self._ws
        if ws is None or ws.closed or self._closing:
            raise TransportClosed("socket is closed")
        try:
            await ws.send_bytes(data)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportClosed(str(exc)) from exc

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        if self._ws is not None:
            await self._ws.close()
        await self._close_http()

    async def _close_http(self) -> None:
        if self._owns_http and self._http is not None:
            http = self._http
            self._http = None
            await http.close()

    async def _pump(self) -> None:
        ws = self._ws
        assert ws is not None
        try:
            async for message in ws:
                if message.type == aiohttp.WSMsgType.BINARY:
                    self._on_message(message.data)
                elif message.type == aiohttp.WSMsgType.TEXT:
                    self._on_message(message.data.encode("utf-8"))
                elif message.type == aiohttp.WSMsgType.ERROR:
                    self._on_error(ws.exception() or ConnectionError("socket error"))
        finally:
            if not self._closing:
                logger.info("socket closed by peer: %s", self.url)
                self._on_close()


class TransportAdapter:
    """Encode keystrokes for the socket and decode socket bytes for display.

    Outgoing data is queued and written by a single drain task so sends keep
    their order. Incoming bytes pass through ``interceptor`` before decoding
    and the decoded text through ``text_filter`` before it reaches the surface.
    """

    def __init__(
        self,
        surface: TerminalSurface,
        *,
        encoding: str = "utf-8",
        interceptor: Interceptor | None = None,
        text_filter: TextFilter | None = None,
    ) -> None:
        self.surface = surface
        self.interceptor = interceptor
        self.text_filter = text_filter
        self.encoding = "utf-8"
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.set_encoding(encoding)
        self.transport: Transport | None = None
        self._outbound: Deque[tuple[bytes, asyncio.Future[None] | None]] = deque()
        self._send_event: asyncio.Event | None = None
        self._send_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def attached(self) -> bool:
        return self.transport is not None and not self._closing

    def set_encoding(self, encoding: str) -> None:
        """Switch the text encoding; unknown names leave the current one in place."""

        try:
            info = codecs.lookup(encoding)
        except LookupError:
            raise ValueError(f"unknown encoding: {encoding}") from None
        self.encoding = info.name
        self._decoder = info.incrementaldecoder(errors="replace")

    # Transport callbacks ------------------------------------------------

    def attach(self, transport: Transport) -> None:
        """Start writing queued output to ``transport``."""

        if self._closing:
            raise TransportClosed("adapter is closed")
        if self.transport is not None:
            return
        self.transport = transport
        event = asyncio.Event()
        if self._outbound:
            event.set()
        self._send_event = event
        self._send_task = asyncio.get_running_loop().create_task(self._drain_outbound(event))

    def on_message(self, data: bytes) -> None:
        if self.interceptor is not None:
            data = self.interceptor(data)
        if not data:
            return
        text = self._decoder.decode(data)
        if self.text_filter is not None:
            text = self.text_filter(text)
        if text:
            self.surface.write(text)

    # Outbound -----------------------------------------------------------

    def send_data(self, text: str) -> None:
        """Queue ``text`` for the socket without waiting for it to be written."""

        if not text:
            return
        self._enqueue(text.encode(self.encoding, errors="replace"), None)

    async def send_bytes(self, data: bytes) -> None:
        """Queue raw ``data`` and wait until the socket accepted it."""

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._enqueue(data, waiter)
        await waiter

    def _enqueue(self, data: bytes, waiter: asyncio.Future[None] | None) -> None:
        if self._closing:
            if waiter is not None:
                waiter.set_exception(TransportClosed("adapter is closed"))
                return
            logger.debug("dropping %d bytes queued after close", len(data))
            return
        self._outbound.append((data, waiter))
        if self._send_event is not None:
            self._send_event.set()

    async def _drain_outbound(self, event: asyncio.Event) -> None:
        while True:
            if not self._outbound:
                event.clear()
                await event.wait()
                if self._closing and not self._outbound:
                    break
                continue
            data, waiter = self._outbound.popleft()
            transport = self.transport
            try:
                if transport is None:
                    raise TransportClosed("no transport attached")
                await transport.send(data)
            except asyncio.CancelledError:
                if waiter is not None and not waiter.done():
                    waiter.set_exception(TransportClosed("transport closed"))
                raise
            except (ConnectionError, OSError) as exc:
                if waiter is not None:
                    if not waiter.done():
                        waiter.set_exception(exc)
                else:
                    logger.warning("dropped %d outbound bytes: %s", len(data), exc)
                continue
            if waiter is not None and not waiter.done():
                waiter.set_result(None)

    async def close(self) -> None:
        """Stop writing, fail pending sends and close the transport."""

        if self._closing:
            return
        self._closing = True
        task = self._send_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        while self._outbound:
            _, waiter = self._outbound.popleft()
            if waiter is not None and not waiter.done():
                waiter.set_exception(TransportClosed("transport closed"))
        transport = self.transport
        if transport is not None:
            await transport.close()


__all__ = [
    "Transport",
    "TransportAdapter",
    "TransportFactory",
    "WebSocketTransport",
    "build_terminal_url",
]
