"""End-to-end transfer engine runs against scripted ZMODEM peers."""

from __future__ import annotations

import asyncio
import re

import pytest

from shellbridge.runtime.file_access import FileStat
from shellbridge.runtime.file_transfer_protocols import (
    ABORT_SEQUENCE,
    CANFDX,
    CANOVIO,
    CAN,
    ZBIN,
    ZCBIN,
    ZCRCE,
    ZCRCW,
    ZDLE,
    ZPAD,
    FileDetails,
    FrameType,
    encode_binary_header,
    encode_file_info,
    encode_hex_header,
    encode_subpacket,
    flags_payload,
    position_payload,
)
from shellbridge.runtime.file_transfers import (
    REJECTED_MESSAGE,
    EnginePhase,
    FileTransferEngine,
    ProgressSnapshot,
    Transfer,
    TransferState,
    format_progress,
)
from shellbridge.runtime.timers import TimerGroup
from shellbridge.runtime.transfer_detection import TransferDirection


LOCAL_RINIT = encode_hex_header(FrameType.ZRINIT, flags_payload(CANFDX | CANOVIO))
REMOTE_RINIT = encode_hex_header(FrameType.ZRINIT, flags_payload(CANFDX))
ZFIN = encode_hex_header(FrameType.ZFIN)
ZRQINIT = encode_hex_header(FrameType.ZRQINIT)


def _binary_prefix(frame_type: FrameType) -> bytes:
    return bytes((ZPAD, ZDLE, ZBIN, frame_type))


class FakeSurface:
    is_alternate_buffer = False

    def __init__(self) -> None:
        self.writes: list[str] = []
        self.focused = True
        self.focus_calls = 0

    def write(self, text: str) -> None:
        self.writes.append(text)

    def focus(self) -> None:
        self.focused = True
        self.focus_calls += 1

    def blur(self) -> None:
        self.focused = False

    @property
    def progress(self) -> list[str]:
        return [text for text in self.writes if "%," in text]


class FakePrompts:
    def __init__(self, save_dir: str | None = None, files: list[str] | None = None) -> None:
        self.save_dir = save_dir
        self.files = files or []

    async def choose_save_directory(self) -> str | None:
        return self.save_dir

    async def choose_files_to_send(self) -> list[str]:
        return list(self.files)


class BlockingPrompts:
    def __init__(self) -> None:
        self.asked = asyncio.Event()

    async def choose_save_directory(self) -> str | None:
        self.asked.set()
        await asyncio.Event().wait()
        return None

    async def choose_files_to_send(self) -> list[str]:
        return []


class FakeNotifier:
    def __init__(self) -> None:
        self.errors: list[str] = []

    def notify_error(self, message: str) -> None:
        self.errors.append(message)


class FakeFiles:
    def __init__(self, contents: dict[str, bytes] | None = None) -> None:
        self.contents = dict(contents or {})
        self.reads: list[int] = []
        self.closed: list[str] = []
        self._handles: dict[int, list] = {}
        self._next = 3

    async def exists(self, path: str) -> bool:
        return path in self.contents

    async def stat(self, path: str) -> FileStat:
        if path not in self.contents:
            raise FileNotFoundError(path)
        return FileStat(size=len(self.contents[path]), mtime=1_700_000_000, mode=0o644)

    async def open(self, path: str, mode: str) -> int:
        descriptor = self._next
        self._next += 1
        if mode == "w":
            self.contents[path] = b""
        self._handles[descriptor] = [path, 0]
        return descriptor

    async def read(self, descriptor: int, length: int) -> bytes:
        self.reads.append(length)
        path, position = self._handles[descriptor]
        chunk = self.contents[path][position : position + length]
        self._handles[descriptor][1] = position + len(chunk)
        return chunk

    async def write(self, descriptor: int, data: bytes) -> int:
        path = self._handles[descriptor][0]
        self.contents[path] += data
        return len(data)

    async def close(self, descriptor: int) -> None:
        self.closed.append(self._handles.pop(descriptor)[0])


class ReceivingPeer:
    """Answers the frames a local sender emits the way a remote ``rz`` would."""

    def __init__(self, *, skip: bool = False) -> None:
        self.engine: FileTransferEngine | None = None
        self.sent: list[bytes] = []
        self.skip = skip

    async def send(self, data: bytes) -> None:
        self.sent.append(data)
        if data.startswith(_binary_prefix(FrameType.ZFILE)):
            if self.skip:
                reply = encode_hex_header(FrameType.ZSKIP)
            else:
                reply = encode_hex_header(FrameType.ZRPOS, position_payload(0))
        elif _binary_prefix(FrameType.ZEOF) in data:
            reply = REMOTE_RINIT
        elif data == ZFIN:
            reply = ZFIN
        else:
            return
        assert self.engine is not None
        self.engine.observe(reply)


class SendingPeer:
    """Offers one file to a local receiver the way a remote ``sz`` would."""

    def __init__(self, name: str, payload: bytes) -> None:
        self.engine: FileTransferEngine | None = None
        self.name = name
        self.payload = payload
        self.sent: list[bytes] = []
        self._rinits = 0

    async def send(self, data: bytes) -> None:
        self.sent.append(data)
        if data == LOCAL_RINIT:
            self._rinits += 1
            if self._rinits == 1:
                details = FileDetails(self.name, size=len(self.payload))
                reply = encode_binary_header(FrameType.ZFILE, flags_payload(ZCBIN))
                reply += encode_subpacket(encode_file_info(details), ZCRCW)
            else:
                reply = ZFIN
        elif data == encode_hex_header(FrameType.ZRPOS, position_payload(0)):
            reply = encode_binary_header(FrameType.ZDATA, position_payload(0))
            reply += encode_subpacket(self.payload, ZCRCE)
            reply += encode_binary_header(
                FrameType.ZEOF, position_payload(len(self.payload))
            )
        elif data == ZFIN:
            reply = b"OO"
        else:
            return
        assert self.engine is not None
        self.engine.observe(reply)


def _make_engine(
    surface,
    prompts,
    notifier,
    files,
    peer,
    *,
    chunk_size: int = 8192,
    progress_interval: float = 10.0,
):
    engine = FileTransferEngine(
        surface=surface,
        prompts=prompts,
        notifier=notifier,
        files=files,
        send=peer.send,
        timers=TimerGroup(),
        chunk_size=chunk_size,
        reply_timeout=1.0,
        progress_interval=progress_interval,
    )
    peer.engine = engine
    return engine


async def _wait_idle(engine: FileTransferEngine) -> None:
    async def _poll() -> None:
        while engine.active:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), 2.0)


def _run_send(
    contents: dict[str, bytes],
    *,
    chunk_size: int,
    skip: bool = False,
    progress_interval: float = 10.0,
):
    surface = FakeSurface()
    notifier = FakeNotifier()
    files = FakeFiles(contents)
    peer = ReceivingPeer(skip=skip)

    async def _exercise() -> FileTransferEngine:
        prompts = FakePrompts(files=list(contents))
        engine = _make_engine(
            surface,
            prompts,
            notifier,
            files,
            peer,
            chunk_size=chunk_size,
            progress_interval=progress_interval,
        )
        assert engine.observe(b"rz\r\n" + REMOTE_RINIT) == b"rz\r\n"
        assert engine.active
        await _wait_idle(engine)
        return engine

    engine = asyncio.run(_exercise())
    return engine, surface, notifier, files, peer


@pytest.mark.parametrize(
    "size, expected_reads",
    [(10, [8, 2]), (20, [8, 8, 4]), (16, [8, 8])],
)
def test_send_reads_file_in_chunks(size: int, expected_reads: list[int]) -> None:
    engine, surface, notifier, files, peer = _run_send(
        {"/tmp/a.bin": bytes(range(size))}, chunk_size=8
    )

    assert files.reads == expected_reads
    assert files.closed == ["/tmp/a.bin"]
    assert notifier.errors == []
    assert engine.phase is EnginePhase.IDLE
    assert engine.transfer is not None
    assert engine.transfer.state is TransferState.ENDED
    assert engine.transfer.bytes_transferred == size
    assert surface.progress[-1].startswith("\r\n\x1b[2A\x1b[32ma.bin\x1b[0m::100%,")
    assert f"{size}/{size}" in surface.progress[-1]
    assert peer.sent[-1] == b"OO"
    assert surface.focused


def test_send_of_empty_file_reports_full_progress() -> None:
    engine, surface, notifier, files, peer = _run_send({"/tmp/empty": b""}, chunk_size=8)

    assert files.reads == [0]
    assert all("100%,0/0,0/s" in line for line in surface.progress)
    assert engine.transfer is not None
    assert engine.transfer.state is TransferState.ENDED


# Why: one batch of a 10-byte and a 20-byte file must read each file from its start.
def test_send_batch_reads_every_file_in_order() -> None:
    engine, surface, notifier, files, peer = _run_send(
        {"/tmp/a.bin": bytes(10), "/tmp/b.bin": bytes(range(20))}, chunk_size=8
    )

    assert files.reads == [8, 2, 8, 8, 4]
    assert files.closed == ["/tmp/a.bin", "/tmp/b.bin"]
    offers = [data for data in peer.sent if data.startswith(_binary_prefix(FrameType.ZFILE))]
    assert len(offers) == 2
    assert engine.transfer is not None
    assert engine.transfer.bytes_transferred == 30
    assert engine.transfer.state is TransferState.ENDED
    assert notifier.errors == []


def test_skipped_offer_stops_the_whole_batch() -> None:
    engine, surface, notifier, files, peer = _run_send(
        {"/tmp/a.bin": b"first", "/tmp/b.bin": b"second"}, chunk_size=8, skip=True
    )

    offers = [data for data in peer.sent if data.startswith(_binary_prefix(FrameType.ZFILE))]
    assert len(offers) == 1
    assert files.reads == []
    assert notifier.errors == [REJECTED_MESSAGE]
    assert engine.transfer is not None
    assert engine.transfer.state is TransferState.CANCELED


def test_progress_percent_never_decreases() -> None:
    engine, surface, notifier, files, peer = _run_send(
        {"/tmp/b.bin": bytes(20)}, chunk_size=8, progress_interval=0.0
    )

    percents = [int(re.search(r"::(\d+)%", line).group(1)) for line in surface.progress]
    assert percents == [0, 40, 80, 100, 100]


def test_skipped_offer_notifies_user() -> None:
    engine, surface, notifier, files, peer = _run_send(
        {"/tmp/a.bin": b"payload"}, chunk_size=8, skip=True
    )

    assert notifier.errors == [REJECTED_MESSAGE]
    assert files.reads == []
    assert engine.transfer is not None
    assert engine.transfer.state is TransferState.CANCELED
    assert engine.phase is EnginePhase.IDLE


def test_receive_writes_file_with_collision_suffix() -> None:
    surface = FakeSurface()
    notifier = FakeNotifier()
    files = FakeFiles({"/downloads/report.txt": b"old"})
    peer = SendingPeer("report.txt", b"fresh contents")

    async def _exercise() -> FileTransferEngine:
        engine = _make_engine(surface, FakePrompts(save_dir="/downloads"), notifier, files, peer)
        assert engine.observe(b"sz report.txt\r\n" + ZRQINIT) == b"sz report.txt\r\n"
        await _wait_idle(engine)
        return engine

    engine = asyncio.run(_exercise())

    assert files.contents["/downloads/report.txt"] == b"old"
    written = [path for path in files.contents if path != "/downloads/report.txt"]
    assert len(written) == 1
    assert re.fullmatch(r"/downloads/report\.txt\.[0-9a-f]{12}", written[0])
    assert files.contents[written[0]] == b"fresh contents"
    assert files.closed == written
    assert engine.transfer is not None
    assert engine.transfer.state is TransferState.ENDED
    assert engine.transfer.direction is TransferDirection.RECEIVE
    assert any("ZMODEM::RECEIVE::START" in text for text in surface.writes)
    assert written[0] in surface.progress[-1]
    assert "100%" in surface.progress[-1]
    assert notifier.errors == []


def test_receive_without_save_location_cancels() -> None:
    surface = FakeSurface()
    peer = SendingPeer("report.txt", b"data")

    async def _exercise() -> FileTransferEngine:
        engine = _make_engine(surface, FakePrompts(), FakeNotifier(), FakeFiles(), peer)
        engine.observe(ZRQINIT)
        await _wait_idle(engine)
        return engine

    engine = asyncio.run(_exercise())

    assert peer.sent == [ABORT_SEQUENCE]
    assert engine.transfer is not None
    assert engine.transfer.state is TransferState.CANCELED
    assert surface.writes[-1] == "\r\n"


def test_end_is_idempotent() -> None:
    surface = FakeSurface()
    prompts = BlockingPrompts()
    peer = SendingPeer("report.txt", b"data")

    async def _exercise() -> FileTransferEngine:
        engine = _make_engine(surface, prompts, FakeNotifier(), FakeFiles(), peer)
        engine.observe(ZRQINIT)
        await asyncio.wait_for(prompts.asked.wait(), 1.0)
        assert engine.phase is EnginePhase.AWAIT_SAVE_LOCATION
        await asyncio.gather(engine.end(), engine.end())
        await engine.end()
        await asyncio.sleep(0.01)
        return engine

    engine = asyncio.run(_exercise())

    assert engine.phase is EnginePhase.IDLE
    assert peer.sent == [ABORT_SEQUENCE]
    assert surface.writes.count("\r\n") == 1
    assert surface.focus_calls == 1


def test_output_without_signature_passes_through() -> None:
    surface = FakeSurface()
    peer = SendingPeer("report.txt", b"data")

    async def _exercise() -> bytes:
        engine = _make_engine(surface, FakePrompts(), FakeNotifier(), FakeFiles(), peer)
        return engine.observe(b"plain output " + bytes((CAN,)))

    assert asyncio.run(_exercise()) == b"plain output \x18"


def test_progress_formatting() -> None:
    assert format_progress("a.bin", ProgressSnapshot(512, 1024, 0.5)) == (
        "\x1b[32ma.bin\x1b[0m::50%,512/1024,1.00KB/s"
    )
    assert format_progress("e", ProgressSnapshot(0, 0, 0.0)) == (
        "\x1b[32me\x1b[0m::100%,0/0,0/s"
    )
    assert ProgressSnapshot(2, 3, 1.0).percent == 66


def test_transfer_byte_count_is_monotonic() -> None:
    transfer = Transfer(TransferDirection.SEND)
    transfer.record(5)
    transfer.state = TransferState.ENDED
    transfer.record(3)

    assert transfer.bytes_transferred == 5
    with pytest.raises(ValueError):
        transfer.record(-1)
