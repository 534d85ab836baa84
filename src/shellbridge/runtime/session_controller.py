"""Owner of one terminal session: connection, lifecycle and routing."""

from __future__ import annotations

import asyncio
import codecs
import logging
import sys
import time
from enum import Enum, auto
from typing import Any, Callable, Mapping, Sequence

from ..config import TAB_TYPE_SSH_CONFIG, ClientConfig, PendingScript, TabConfig
from ..session import (
    ConnectionFailure,
    LogState,
    Session,
    SessionRegistry,
    SessionStatus,
)
from .command_tracker import CommandTracker
from .console_ui import (
    CLOSE_ACTION,
    RELOAD_ACTION,
    CloseWarning,
    SessionNotifier,
    TerminalSurface,
    TransferPrompts,
)
from .file_access import FileAccess, LocalFileAccess
from .file_transfers import FileTransferEngine
from .messaging import MessageChannel, MessagingGateway, ShortcutContext
from .remote_sessions import RemoteSessionClient, build_session_options
from .timers import Throttle, TimerGroup
from .transports import Transport, TransportAdapter, TransportFactory, build_terminal_url


logger = logging.getLogger(__name__)

CTRL_C = "\x03"
SOCKET_CLOSE_MESSAGE = "Connection to the remote session was closed"


class SocketCloseOutcome(Enum):
    """How an unexpected socket close was handled."""

    IGNORED = auto()
    SILENT_ERROR = auto()
    DISCARDED = auto()
    WARNING = auto()


class SessionController:
    """Connect a tab to its remote terminal and keep the pieces in step.

    The controller allocates the remote session, opens the socket, runs the
    tab's startup commands and routes keystrokes, output and out-of-band
    messages between the transport adapter, the transfer engine, the command
    tracker and the UI collaborators.
    """

    def __init__(
        self,
        tab: TabConfig,
        *,
        client: ClientConfig,
        remote: RemoteSessionClient,
        transport_factory: TransportFactory,
        surface: TerminalSurface,
        prompts: TransferPrompts,
        notifier: SessionNotifier,
        registry: SessionRegistry,
        channel: MessageChannel,
        files: FileAccess | None = None,
        on_cwd: Callable[[str, str], None] | None = None,
        platform: str | None = None,
    ) -> None:
        self.client = client
        self.remote = remote
        self.transport_factory = transport_factory
        self.surface = surface
        self.notifier = notifier
        self.registry = registry
        self.channel = channel
        self.platform = platform or sys.platform
        self._on_cwd = on_cwd
        self.session = Session(
            id=tab.id,
            tab=tab,
            encoding=tab.encode or "utf-8",
            cwd_tracking=client.sftp_path_follow_ssh,
        )
        self.log_state = LogState(
            save_terminal_log_to_file=client.save_terminal_log_to_file,
            add_timestamp_to_term_log=client.add_timestamp_to_term_log,
        )
        self.timers = TimerGroup()
        self.tracker = CommandTracker(
            timers=self.timers,
            send=self.send_data,
            is_alternate_buffer=lambda: self.surface.is_alternate_buffer,
            on_cwd=self._report_cwd,
            cwd_tracking=client.sftp_path_follow_ssh,
            probe_delay=client.cwd_probe_delay,
            exit_grace=client.exit_grace,
        )
        self.engine = FileTransferEngine(
            surface=surface,
            prompts=prompts,
            notifier=notifier,
            files=files if files is not None else LocalFileAccess(),
            send=self._send_bytes,
            timers=self.timers,
            chunk_size=client.zmodem_chunk_size,
            reply_timeout=client.transfer_reply_timeout,
            progress_interval=client.progress_interval,
        )
        self.gateway = MessagingGateway(channel, self, session_id=tab.id)
        self.shortcuts = ShortcutContext(
            channel,
            owner_id=tab.id,
            actions={
                "copy": self.copy,
                "paste": self.paste,
                "paste_selected": self.paste_selected,
                "clear": self.clear,
                "search": self.toggle_search,
            },
        )
        self.adapter: TransportAdapter | None = None
        self.transport: Transport | None = None
        self.close_warning: CloseWarning | None = None
        self._resize = Throttle(
            client.resize_interval, self._push_resize, self.timers, name="resize"
        )
        self._generation = 0
        self._torn_down = False
        registry.register(self)

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    @property
    def is_remote(self) -> bool:
        return self.session.tab.is_remote

    # Lifecycle ----------------------------------------------------------

    async def initialize(self) -> bool:
        """Allocate the remote session and open its socket.

        Returns ``True`` once the socket is open. Failures leave the session in
        ``ERROR`` and are reported through the notifier; nothing is retried.
        """

        session = self.session
        cols, rows = self.surface.size
        options = build_session_options(self.client, session.tab, cols=cols, rows=rows)
        logger.info("creating session for tab %s", session.id)
        try:
            remote_id = await self.remote.create_session(options)
        except ConnectionFailure as exc:
            self._fail(f"Cannot create session: {exc}")
            return False
        if self._torn_down:
            return False
        if not remote_id:
            self._fail("Cannot create session: the server returned no session id")
            return False
        session.remote_id = remote_id
        session.advance(SessionStatus.CONNECTED)

        self._generation += 1
        generation = self._generation
        adapter = TransportAdapter(
            self.surface,
            encoding=session.encoding,
            interceptor=self.engine.observe,
            text_filter=self.tracker.scan_output,
        )
        url = build_terminal_url(
            host=self.client.host,
            port=self.client.port,
            server=self.client.server,
            remote_id=remote_id,
            session_id=self.client.session_id,
            token=self.client.token,
        )
        transport = self.transport_factory(
            url,
            adapter.on_message,
            lambda: self._on_socket_close(generation),
            lambda exc: self._on_socket_error(generation, exc),
        )
        self.adapter = adapter
        self.transport = transport
        try:
            await transport.open()
        except ConnectionFailure as exc:
            if self._torn_down:
                return False
            self._fail(f"Cannot connect to session: {exc}")
            return False
        if self._torn_down or generation != self._generation:
            logger.info("session %s closed while its socket was opening", session.id)
            await transport.close()
            return False
        adapter.attach(transport)
        self.gateway.attach()
        logger.info("session %s connected as %s", session.id, remote_id)
        self._run_init_script()
        return True

    def _fail(self, message: str) -> None:
        logger.error("session %s: %s", self.session.id, message)
        self.session.advance(SessionStatus.ERROR)
        self.notifier.notify_error(message)

    def _run_init_script(self) -> None:
        tab = self.session.tab
        if tab.type == TAB_TYPE_SSH_CONFIG:
            words = tab.title.split()
            self.send_data(f"ssh {words[0] if words else ''}\r")
            return
        start_folder = tab.start_directory or self.client.init_folder
        if start_folder:
            self.send_data(f'cd "{start_folder}"\r')
        if tab.run_scripts:
            self.timers.spawn("startup_scripts", self._run_pending_scripts(tab.run_scripts))

    async def _run_pending_scripts(self, scripts: Sequence[PendingScript]) -> None:
        for item in scripts:
            await asyncio.sleep(item.delay / 1000)
            if item.script:
                self.send_data(item.script + "\r")

    async def reload(self) -> bool:
        """Drop the current connection and create the session again."""

        logger.info("reloading session %s", self.session.id)
        await self._shutdown_connection()
        self.session.reset_for_reconnect()
        return await self.initialize()

    async def _shutdown_connection(self) -> None:
        await self.engine.end()
        adapter = self.adapter
        self.adapter = None
        self.transport = None
        self._generation += 1
        if adapter is not None:
            await adapter.close()
        self.tracker.reset()

    async def teardown(self) -> None:
        """Release everything the session holds; safe on partial sessions."""

        if self._torn_down:
            return
        self._torn_down = True
        logger.info("tearing down session %s", self.session.id)
        try:
            await self.engine.end()
        except Exception:
            logger.warning("ending transfer during teardown failed", exc_info=True)
        try:
            await self._shutdown_connection()
        except Exception:
            logger.warning("closing transport during teardown failed", exc_info=True)
        self.timers.cancel_all()
        self.gateway.detach()
        self.shortcuts.clear()
        warning = self.close_warning
        self.close_warning = None
        if warning is not None:
            self.notifier.dismiss(warning.key)
        self.registry.unregister(self.session.id)

    # Socket events ------------------------------------------------------

    def _on_socket_close(self, generation: int) -> None:
        if generation != self._generation:
            return
        self.timers.spawn("socket_close", self.handle_socket_close())

    def _on_socket_error(self, generation: int, exc: BaseException) -> None:
        if generation != self._generation or self._torn_down:
            return
        logger.error("socket error on session %s", self.session.id, exc_info=exc)
        self.session.advance(SessionStatus.ERROR)

    async def handle_socket_close(self) -> SocketCloseOutcome:
        """Apply the close policy for an unexpected socket close."""

        if self._torn_down or not self.session.tab.enable_ssh:
            return SocketCloseOutcome.IGNORED
        await self.engine.end()
        self.session.advance(SessionStatus.ERROR)
        if not self.registry.is_foreground(self.session.id):
            logger.info("background session %s lost its socket", self.session.id)
            return SocketCloseOutcome.SILENT_ERROR
        if self.tracker.user_typed_exit:
            logger.info("session %s exited at the user's request", self.session.id)
            await self.registry.discard(self.session.id)
            return SocketCloseOutcome.DISCARDED
        warning = CloseWarning(
            key=f"open{int(time.time() * 1000)}", message=SOCKET_CLOSE_MESSAGE
        )
        self.close_warning = warning
        self.notifier.show_close_warning(warning)
        return SocketCloseOutcome.WARNING

    async def resolve_close_warning(self, action: str) -> None:
        """Act on the user's choice for the pending close warning."""

        warning = self.close_warning
        if warning is None:
            return
        if action not in warning.actions:
            raise ValueError(f"unknown close action: {action}")
        self.close_warning = None
        self.notifier.dismiss(warning.key)
        if action == CLOSE_ACTION:
            await self.registry.discard(self.session.id)
        elif action == RELOAD_ACTION:
            await self.reload()

    # Input and output ---------------------------------------------------

    def send_data(self, text: str) -> None:
        adapter = self.adapter
        if adapter is None:
            logger.debug("session %s not connected; dropping input", self.session.id)
            return
        adapter.send_data(text)

    async def _send_bytes(self, data: bytes) -> None:
        adapter = self.adapter
        if adapter is None:
            raise ConnectionFailure("session is not connected")
        await adapter.send_bytes(data)

    def on_user_input(self, data: str) -> None:
        """Handle keystrokes typed into the surface."""

        if self.engine.active:
            if CTRL_C in data:
                self.engine.cancel()
            return
        self.tracker.feed(data)
        self.send_data(data)

    def resize(self, cols: int, rows: int) -> None:
        self._resize(cols, rows)

    def _push_resize(self, cols: int, rows: int) -> None:
        remote_id = self.session.remote_id
        if remote_id is None or self.session.status is not SessionStatus.CONNECTED:
            return
        self.timers.spawn("resize_request", self._send_resize(remote_id, cols, rows))

    async def _send_resize(self, remote_id: str, cols: int, rows: int) -> None:
        try:
            await self.remote.resize_session(remote_id, self.client.session_id, cols, rows)
        except ConnectionFailure as exc:
            logger.warning("resize of session %s failed: %s", self.session.id, exc)

    def set_cwd_tracking(self, enabled: bool) -> None:
        self.session.cwd_tracking = enabled
        self.tracker.set_cwd_tracking(enabled)

    def _report_cwd(self, cwd: str) -> None:
        if self._on_cwd is not None:
            self._on_cwd(cwd, self.session.id)

    # Out-of-band actions ------------------------------------------------

    def is_active(self) -> bool:
        return self.registry.foreground_id == self.session.id

    def zoom(self, delta: float) -> None:
        self.surface.zoom(delta)

    def switch_encoding(self, encoding: str) -> None:
        adapter = self.adapter
        try:
            if adapter is not None:
                adapter.set_encoding(encoding)
                self.session.encoding = adapter.encoding
            else:
                self.session.encoding = codecs.lookup(encoding).name
        except (ValueError, LookupError):
            logger.warning("session %s: ignoring unknown encoding %r", self.session.id, encoding)

    def batch_input(self, command: str) -> None:
        self.send_data(command + "\r")

    def quick_command(self, command: str, input_only: bool = False) -> None:
        self.send_data(command + ("" if input_only else "\r"))
        self.surface.focus()

    def show_info_panel(self) -> None:
        self.surface.show_info(self.info())

    def info(self) -> Mapping[str, Any]:
        tab = self.session.tab
        return {
            "logName": tab.log_name or tab.id,
            "id": tab.id,
            "pid": self.session.remote_id,
            "sessionId": self.client.session_id,
            "isRemote": self.is_remote,
            "isActive": self.is_active(),
        }

    def toggle_search(self) -> None:
        self.surface.toggle_search()

    def search_next(self, keyword: str, options: Mapping[str, Any]) -> None:
        self.surface.find_next(keyword, options)

    def search_prev(self, keyword: str, options: Mapping[str, Any]) -> None:
        self.surface.find_previous(keyword, options)

    def clear_search(self) -> None:
        self.surface.clear_search()

    def focus(self) -> None:
        self.surface.focus()

    def blur(self) -> None:
        self.surface.blur()

    def copy(self) -> None:
        self.surface.copy_to_clipboard(self.surface.get_selection())
        self.surface.focus()

    def paste(self, text: str | None = None) -> None:
        """Type ``text`` (or the clipboard) into the session."""

        if text is None:
            text = self.surface.read_clipboard()
        if self.platform.startswith("win") and self.is_remote:
            text = text.replace("\r\n", "\n")
        if text:
            self.on_user_input(text)
        self.surface.focus()

    def paste_selected(self) -> None:
        selected = self.surface.get_selection()
        if selected:
            self.on_user_input(selected)
        self.surface.focus()

    def clear(self) -> None:
        self.surface.clear()
        self.surface.focus()

    def drop_files(self, paths: Sequence[str]) -> None:
        if paths:
            self.send_data(" ".join(f'"{path}"' for path in paths))

    def open_context_menu(self, position: Mapping[str, Any] | None = None) -> str:
        items = [
            {"func": "copy", "text": "copy"},
            {"func": "paste", "text": "paste"},
            {"func": "paste_selected", "text": "pasteSelected"},
            {"func": "clear", "text": "clear"},
            {"func": "search", "text": "search"},
        ]
        return self.shortcuts.open(items, position)


__all__ = ["SessionController", "SocketCloseOutcome"]
