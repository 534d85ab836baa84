"""ZMODEM transfer engine layered over a session's inbound byte stream."""

from __future__ import annotations

import asyncio
import logging
import math
import posixpath
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, List

from .console_ui import SessionNotifier, TerminalSurface, TransferPrompts
from .file_access import FileAccess, FileStat
from .file_transfer_protocols import (
    ByteSender,
    FileDetails,
    FileTransferAborted,
    FileTransferError,
    Offer,
    TransferIOFailure,
    TransferRejected,
    ZmodemReceiveSession,
    ZmodemSendSession,
)
from .timers import Throttle, TimerGroup, TimeSource
from .transfer_detection import Detection, TransferDetector, TransferDirection


logger = logging.getLogger(__name__)

REJECTED_MESSAGE = "Transfer cancelled, maybe file already exists"


class EnginePhase(Enum):
    """Where the engine is in a transfer exchange."""

    IDLE = auto()
    OFFER_DETECTED = auto()
    AWAIT_SAVE_LOCATION = auto()
    FILE_ENUMERATED = auto()
    STREAMING = auto()
    ENDED = auto()
    CANCELED = auto()


class TransferState(Enum):
    OFFERING = auto()
    TRANSFERRING = auto()
    FINISHING = auto()
    ENDED = auto()
    CANCELED = auto()


_TERMINAL_STATES = frozenset({TransferState.ENDED, TransferState.CANCELED})


@dataclass(frozen=True)
class FileManifestEntry:
    name: str
    size: int
    path: str


@dataclass
class Transfer:
    """Bookkeeping for one protocol exchange, which may carry several files."""

    direction: TransferDirection
    started_at: float = 0.0
    files: List[FileManifestEntry] = field(default_factory=list)
    state: TransferState = TransferState.OFFERING
    bytes_transferred: int = field(init=False, default=0)

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL_STATES

    def record(self, count: int) -> None:
        """Add ``count`` payload bytes; ignored once the transfer has finished."""

        if count < 0:
            raise ValueError("byte count cannot be negative")
        if self.finished:
            return
        self.bytes_transferred += count


@dataclass(frozen=True)
class ProgressSnapshot:
    """Progress of the current file, derived at render time."""

    bytes_transferred: int
    total_bytes: int
    elapsed: float

    @property
    def percent(self) -> int:
        if self.total_bytes <= 0:
            return 100
        return math.floor(self.bytes_transferred * 100 / self.total_bytes)

    @property
    def speed(self) -> float:
        """Throughput in KiB per second."""

        elapsed_ms = max(self.elapsed * 1000.0, 1.0)
        return self.bytes_transferred * 1000 / 1024 / elapsed_ms


def format_progress(name: str, snapshot: ProgressSnapshot) -> str:
    speed = f"{snapshot.speed:.2f}KB" if snapshot.total_bytes > 0 else "0"
    return (
        f"\x1b[32m{name}\x1b[0m::{snapshot.percent}%,"
        f"{snapshot.bytes_transferred}/{snapshot.total_bytes},{speed}/s"
    )


class CancellationToken:
    """Cooperative cancel flag checked at every chunk boundary."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class FileTransferEngine:
    """Detect ZMODEM exchanges in terminal output and run them to completion.

    :meth:`observe` sits on the inbound path of the transport adapter. While
    no transfer is active it hands bytes back for display and watches for a
    start signature. Once one is found every inbound byte belongs to the
    protocol session until the exchange ends, and :meth:`end` restores the
    terminal to normal operation.
    """

    def __init__(
        self,
        *,
        surface: TerminalSurface,
        prompts: TransferPrompts,
        notifier: SessionNotifier,
        files: FileAccess,
        send: ByteSender,
        timers: TimerGroup,
        chunk_size: int = 8192,
        reply_timeout: float = 30.0,
        progress_interval: float = 0.5,
        time_source: TimeSource | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.surface = surface
        self.prompts = prompts
        self.notifier = notifier
        self.files = files
        self.chunk_size = chunk_size
        self.reply_timeout = reply_timeout
        self._send = send
        self._timers = timers
        self._time_source = time_source
        self._detector = TransferDetector()
        self._progress = Throttle(
            progress_interval,
            self._write_progress,
            timers,
            name="transfer_progress",
            time_source=time_source,
        )
        self.phase = EnginePhase.IDLE
        self.transfer: Transfer | None = None
        self.token = CancellationToken()
        self._session: ZmodemReceiveSession | ZmodemSendSession | None = None
        self._descriptor: int | None = None
        self._save_dir: str | None = None
        self._file: FileManifestEntry | None = None
        self._file_bytes = 0
        self._file_started = 0.0
        self._ending: asyncio.Future[None] | None = None

    @property
    def active(self) -> bool:
        return self.phase is not EnginePhase.IDLE

    def _now(self) -> float:
        if self._time_source is not None:
            return self._time_source()
        return self._timers.time()

    def _set_phase(self, phase: EnginePhase) -> None:
        if phase is not self.phase:
            logger.debug("transfer phase %s -> %s", self.phase.name, phase.name)
            self.phase = phase

    def _current_transfer(self) -> Transfer:
        transfer = self.transfer
        if transfer is None:
            raise FileTransferError("no transfer in progress")
        return transfer

    # Inbound path -------------------------------------------------------

    def observe(self, data: bytes) -> bytes:
        """Route inbound ``data``; return the bytes that belong on the display."""

        session = self._session
        if session is not None:
            return session.consume(data)
        if self.active:
            return data
        detection = self._detector.scan(data)
        if detection is None:
            return data
        self._begin(detection)
        return detection.display

    def _begin(self, detection: Detection) -> None:
        logger.info("detected ZMODEM %s request", detection.direction.value)
        self.token = CancellationToken()
        self.transfer = Transfer(detection.direction, started_at=self._now())
        self._set_phase(EnginePhase.OFFER_DETECTED)
        if detection.direction is TransferDirection.RECEIVE:
            session: ZmodemReceiveSession | ZmodemSendSession = ZmodemReceiveSession(
                self._send, reply_timeout=self.reply_timeout
            )
        else:
            session = ZmodemSendSession(self._send, reply_timeout=self.reply_timeout)
        self._session = session
        session.consume(detection.session_bytes)
        self.surface.blur()
        self._timers.spawn("transfer", self._run(detection.direction, session))

    async def _run(
        self,
        direction: TransferDirection,
        session: ZmodemReceiveSession | ZmodemSendSession,
    ) -> None:
        try:
            if isinstance(session, ZmodemReceiveSession):
                await self._receive(session)
            else:
                await self._send_files(session)
        except TransferRejected as exc:
            logger.warning("%s", exc)
            self.notifier.notify_error(str(exc))
        except FileTransferAborted as exc:
            logger.info("%s transfer aborted: %s", direction.value, exc)
        except (FileTransferError, OSError) as exc:
            logger.error("%s transfer failed", direction.value, exc_info=exc)
            self.notifier.notify_error(str(exc))
        finally:
            await self.end()

    def _write_banner(self, label: str) -> None:
        self.surface.write(f"\x1b[32mZMODEM::{label}::START\x1b[0m\r\n\r\n")

    # Receive ------------------------------------------------------------

    async def _receive(self, session: ZmodemReceiveSession) -> None:
        self._set_phase(EnginePhase.AWAIT_SAVE_LOCATION)
        save_dir = await self.prompts.choose_save_directory()
        if not save_dir:
            logger.info("no save location chosen; cancelling receive")
            return
        self._save_dir = save_dir
        await session.start()
        self._write_banner("RECEIVE")
        self._set_phase(EnginePhase.STREAMING)
        await session.run(self._on_offer, self._on_file_end)
        self._current_transfer().state = TransferState.FINISHING

    async def _on_offer(self, offer: Offer) -> None:
        transfer = self._current_transfer()
        save_dir = self._save_dir
        if save_dir is None:
            raise FileTransferError("no save location chosen")
        name = posixpath.basename(offer.details.name.replace("\\", "/")) or "download"
        path = posixpath.join(save_dir, name)
        if await self.files.exists(path):
            path = f"{path}.{uuid.uuid4().hex[:12]}"
        try:
            self._descriptor = await self.files.open(path, "w")
        except OSError as exc:
            raise TransferIOFailure(f"cannot open {path}: {exc}") from exc
        entry = FileManifestEntry(name=name, size=offer.details.size or 0, path=path)
        transfer.files.append(entry)
        transfer.state = TransferState.TRANSFERRING
        self._start_file(entry)
        await offer.accept(self._on_input)

    async def _on_input(self, payload: bytes) -> None:
        descriptor = self._descriptor
        if self.token.cancelled or descriptor is None:
            return
        try:
            await self.files.write(descriptor, payload)
        except OSError as exc:
            raise TransferIOFailure(f"cannot write received data: {exc}") from exc
        self._advance(len(payload))

    async def _on_file_end(self, offer: Offer) -> None:
        self._finish_file()
        await self._close_descriptor()
        if self.transfer is not None:
            self.transfer.state = TransferState.OFFERING

    # Send ---------------------------------------------------------------

    async def _send_files(self, session: ZmodemSendSession) -> None:
        transfer = self._current_transfer()
        self._set_phase(EnginePhase.FILE_ENUMERATED)
        paths = await self.prompts.choose_files_to_send()
        if not paths:
            logger.info("no files chosen; cancelling send")
            return
        stats: List[FileStat] = []
        for path in paths:
            try:
                stat = await self.files.stat(path)
            except OSError as exc:
                raise TransferIOFailure(f"cannot stat {path}: {exc}") from exc
            stats.append(stat)
            transfer.files.append(
                FileManifestEntry(name=posixpath.basename(path), size=stat.size, path=path)
            )
        self._write_banner("SEND")
        self._set_phase(EnginePhase.STREAMING)
        files_remaining = len(transfer.files)
        bytes_remaining = sum(entry.size for entry in transfer.files)
        for entry, stat in zip(list(transfer.files), stats):
            if self.token.cancelled:
                return
            details = FileDetails(
                name=entry.name,
                size=entry.size,
                mtime=stat.mtime,
                mode=stat.mode,
                files_remaining=files_remaining,
                bytes_remaining=bytes_remaining,
            )
            await self._send_file(session, entry, details)
            files_remaining -= 1
            bytes_remaining -= entry.size
        transfer.state = TransferState.FINISHING

    async def _send_file(
        self, session: ZmodemSendSession, entry: FileManifestEntry, details: FileDetails
    ) -> None:
        transfer = self._current_transfer()
        xfer = await session.send_offer(details)
        if xfer is None:
            raise TransferRejected(REJECTED_MESSAGE)
        try:
            self._descriptor = await self.files.open(entry.path, "r")
        except OSError as exc:
            raise TransferIOFailure(f"cannot open {entry.path}: {exc}") from exc
        transfer.state = TransferState.TRANSFERRING
        self._start_file(entry)
        offset = 0
        while True:
            length = min(self.chunk_size, entry.size - offset)
            try:
                data = await self.files.read(self._descriptor, length)
            except OSError as exc:
                raise TransferIOFailure(f"cannot read {entry.path}: {exc}") from exc
            await xfer.send(data)
            offset += len(data)
            self._advance(len(data))
            if len(data) < self.chunk_size or offset >= entry.size or self.token.cancelled:
                break
        await self._close_descriptor()
        if self.token.cancelled:
            return
        self._finish_file()
        await xfer.end()
        transfer.state = TransferState.OFFERING

    # Progress -----------------------------------------------------------

    def _start_file(self, entry: FileManifestEntry) -> None:
        self._file = entry
        self._file_bytes = 0
        self._file_started = self._now()
        self._progress(entry, 0)

    def _advance(self, count: int) -> None:
        transfer = self._current_transfer()
        entry = self._file
        if entry is None:
            raise FileTransferError("no file in progress")
        transfer.record(count)
        self._file_bytes += count
        self._progress(entry, self._file_bytes)

    def _finish_file(self) -> None:
        entry = self._file
        if entry is None:
            return
        self._progress.cancel()
        self._write_progress(entry, max(entry.size, self._file_bytes))

    def _write_progress(self, entry: FileManifestEntry, done: int) -> None:
        if self.token.cancelled:
            return
        label = entry.name
        if self.transfer is not None and self.transfer.direction is TransferDirection.RECEIVE:
            label = entry.path
        total = entry.size if entry.size else done
        snapshot = ProgressSnapshot(done, total, self._now() - self._file_started)
        self.surface.write("\r\n\x1b[2A" + format_progress(label, snapshot) + "\n")

    # Cleanup ------------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation of the active transfer without waiting."""

        if self.active:
            logger.info("transfer cancelled by user")
            self._timers.spawn("transfer_cancel", self.end())

    async def end(self) -> None:
        """Stop any transfer and restore the terminal; safe to call repeatedly."""

        if self._ending is not None:
            await asyncio.shield(self._ending)
            return
        if not self.active:
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._ending = waiter
        try:
            await self._cleanup()
        finally:
            self._ending = None
            waiter.set_result(None)

    async def _cleanup(self) -> None:
        transfer = self.transfer
        completed = transfer is not None and transfer.state is TransferState.FINISHING
        self.token.cancel()
        self._set_phase(EnginePhase.ENDED if completed else EnginePhase.CANCELED)
        self._timers.cancel("transfer")
        await self._guarded("cancel progress", self._cancel_progress())
        await self._guarded("close file", self._close_descriptor())
        session = self._session
        if session is not None:
            await self._guarded("close protocol session", session.close())
        self._session = None
        self._save_dir = None
        self._file = None
        self._file_bytes = 0
        self._detector.reset()
        if transfer is not None and not transfer.finished:
            transfer.state = TransferState.ENDED if completed else TransferState.CANCELED
        await self._guarded("restore terminal", self._restore_surface())
        self._set_phase(EnginePhase.IDLE)
        logger.info("transfer %s", "finished" if completed else "cancelled")

    async def _guarded(self, label: str, step: Awaitable[None]) -> None:
        try:
            await step
        except Exception:
            logger.warning("transfer cleanup step %r failed", label, exc_info=True)

    async def _cancel_progress(self) -> None:
        self._progress.cancel()

    async def _close_descriptor(self) -> None:
        descriptor = self._descriptor
        if descriptor is None:
            return
        self._descriptor = None
        await self.files.close(descriptor)

    async def _restore_surface(self) -> None:
        self.surface.focus()
        self.surface.write("\r\n")


__all__ = [
    "CancellationToken",
    "EnginePhase",
    "FileManifestEntry",
    "FileTransferEngine",
    "ProgressSnapshot",
    "REJECTED_MESSAGE",
    "Transfer",
    "TransferState",
    "format_progress",
]
