"""ZMODEM framing and the peer sessions used by the transfer engine."""

from __future__ import annotations

import asyncio
import binascii
import logging
import re
import zlib
from dataclasses import dataclass
from enum import IntEnum
from typing import Awaitable, Callable, List, Union


logger = logging.getLogger(__name__)

ByteSender = Callable[[bytes], Awaitable[None]]
InputHandler = Callable[[bytes], Awaitable[None]]


class FileTransferError(RuntimeError):
    """Raised when a protocol-level failure interrupts a transfer."""


class FileTransferAborted(FileTransferError):
    """Raised when either side cancels an active transfer."""


class TransferRejected(FileTransferError):
    """Raised when the peer skips a file we offered."""


class TransferIOFailure(FileTransferError):
    """Raised when a local file cannot be opened, read or written."""


class FrameError(FileTransferError):
    """Raised when a header or subpacket fails its CRC or format checks."""


ZPAD = 0x2A
ZDLE = 0x18
CAN = 0x18
ZBIN = 0x41
ZHEX = 0x42
ZBIN32 = 0x43
XON = 0x11
XOFF = 0x13
BACKSPACE = 0x08

ZCRCE = 0x68
ZCRCG = 0x69
ZCRCQ = 0x6A
ZCRCW = 0x6B
ZRUB0 = 0x6C
ZRUB1 = 0x6D

# ZRINIT capability flags (ZF0).
CANFDX = 0x01
CANOVIO = 0x02
CANFC32 = 0x20

# ZFILE conversion option (ZF0): binary transfer.
ZCBIN = 0x01

ABORT_SEQUENCE = bytes([CAN] * 8 + [BACKSPACE] * 8)
SESSION_TRAILER = b"OO"

_PEER_ABORT_RUN = 5
_SUBPACKET_ENDS = frozenset({ZCRCE, ZCRCG, ZCRCQ, ZCRCW})
_FLOW_CONTROL = frozenset({XON, XOFF, XON | 0x80, XOFF | 0x80})
_ESCAPED = re.compile(b"[\x10\x11\x13\x18\x90\x91\x93\x98]")


class FrameType(IntEnum):
    ZRQINIT = 0
    ZRINIT = 1
    ZSINIT = 2
    ZACK = 3
    ZFILE = 4
    ZSKIP = 5
    ZNAK = 6
    ZABORT = 7
    ZFIN = 8
    ZRPOS = 9
    ZDATA = 10
    ZEOF = 11
    ZFERR = 12
    ZCRC = 13
    ZCHALLENGE = 14
    ZCOMPL = 15
    ZCAN = 16
    ZFREECNT = 17
    ZCOMMAND = 18


# Headers followed by one or more data subpackets.
_SUBPACKET_HEADERS = frozenset(
    {FrameType.ZSINIT, FrameType.ZFILE, FrameType.ZDATA, FrameType.ZCOMMAND}
)

# Hex headers that are not followed by an XON.
_NO_XON_HEADERS = frozenset({FrameType.ZACK, FrameType.ZFIN})


def crc16(payload: bytes) -> int:
    return binascii.crc_hqx(payload, 0)


def crc32(payload: bytes) -> int:
    return zlib.crc32(payload) & 0xFFFFFFFF


def zdle_escape(payload: bytes) -> bytes:
    """Escape bytes that would otherwise be eaten by the link."""

    return _ESCAPED.sub(lambda match: bytes((ZDLE, match.group()[0] ^ 0x40)), payload)


def _unescape_byte(code: int) -> int:
    if code == ZRUB0:
        return 0x7F
    if code == ZRUB1:
        return 0xFF
    if code & 0x60 == 0x40:
        return code ^ 0x40
    raise FrameError(f"invalid ZDLE escape {code:#04x}")


def position_payload(position: int) -> bytes:
    return (position & 0xFFFFFFFF).to_bytes(4, "little")


def flags_payload(zf0: int = 0, zf1: int = 0, zf2: int = 0, zf3: int = 0) -> bytes:
    return bytes((zf3, zf2, zf1, zf0))


def encode_hex_header(frame_type: int, payload: bytes = b"\0\0\0\0") -> bytes:
    body = bytes((frame_type,)) + payload
    raw = body + crc16(body).to_bytes(2, "big")
    frame = b"**" + bytes((ZDLE, ZHEX)) + raw.hex().encode("ascii") + b"\r\x8a"
    if frame_type not in _NO_XON_HEADERS:
        frame += bytes((XON,))
    return frame


def encode_binary_header(frame_type: int, payload: bytes = b"\0\0\0\0") -> bytes:
    body = bytes((frame_type,)) + payload
    raw = body + crc16(body).to_bytes(2, "big")
    return bytes((ZPAD, ZDLE, ZBIN)) + zdle_escape(raw)


def encode_subpacket(data: bytes, end: int) -> bytes:
    """Frame ``data`` as a CRC-16 data subpacket terminated by ``end``."""

    crc = crc16(data + bytes((end,))).to_bytes(2, "big")
    frame = zdle_escape(data) + bytes((ZDLE, end)) + zdle_escape(crc)
    if end == ZCRCW:
        frame += bytes((XON,))
    return frame


@dataclass(frozen=True)
class Header:
    """A decoded ZMODEM header."""

    type: int
    payload: bytes = b"\0\0\0\0"

    @property
    def name(self) -> str:
        try:
            return FrameType(self.type).name
        except ValueError:
            return f"frame#{self.type}"

    @property
    def position(self) -> int:
        return int.from_bytes(self.payload, "little")

    @property
    def zf0(self) -> int:
        return self.payload[3]


@dataclass(frozen=True)
class Subpacket:
    """A decoded data subpacket and the marker that terminated it."""

    data: bytes
    end: int

    @property
    def ends_frame(self) -> bool:
        return self.end in (ZCRCE, ZCRCW)


FrameEvent = Union[Header, Subpacket, FileTransferError]


class FrameReader:
    """Incremental decoder for the bytes a ZMODEM peer sends us.

    ``feed`` accepts arbitrary splits of the inbound stream and returns the
    headers and subpackets completed so far. Framing failures and a peer abort
    are returned in-band as exception instances so that events decoded before
    them keep their order. Once a ZFIN header or an abort is seen the reader
    stops decoding and keeps later bytes as :meth:`take_remainder` output.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._partial = bytearray()
        self._in_subpacket = False
        self._use_crc32 = False
        self._can_run = 0
        self.finished = False

    def feed(self, data: bytes) -> List[FrameEvent]:
        if self.finished:
            self._buffer.extend(data)
            return []
        if self._peer_aborted(data):
            self.finished = True
            self._buffer.clear()
            return [FileTransferAborted("peer cancelled the transfer")]
        self._buffer.extend(data)
        events: List[FrameEvent] = []
        while not self.finished:
            try:
                if self._in_subpacket:
                    event = self._read_subpacket()
                else:
                    event = self._read_header()
            except FrameError as exc:
                events.append(exc)
                continue
            if event is None:
                break
            events.append(event)
        return events

    def take_remainder(self) -> bytes:
        remainder = bytes(self._buffer)
        self._buffer.clear()
        return remainder

    def discard_subpackets(self) -> None:
        """Drop any partially decoded subpacket and look for a header next."""

        self._partial.clear()
        self._in_subpacket = False

    def _peer_aborted(self, data: bytes) -> bool:
        if not data:
            return False
        if bytes((CAN,)) * _PEER_ABORT_RUN in data:
            return True
        stripped = data.lstrip(bytes((CAN,)))
        if not stripped:
            self._can_run += len(data)
            return self._can_run >= _PEER_ABORT_RUN
        if self._can_run + (len(data) - len(stripped)) >= _PEER_ABORT_RUN:
            return True
        self._can_run = len(data) - len(data.rstrip(bytes((CAN,))))
        return False

    def _read_header(self) -> Header | None:
        buf = self._buffer
        start = buf.find(bytes((ZPAD, ZDLE)))
        if start < 0:
            # Keep a trailing pad byte that may begin the next header.
            keep = 1 if buf.endswith(bytes((ZPAD,))) else 0
            del buf[: len(buf) - keep]
            return None
        del buf[:start]
        if len(buf) < 3:
            return None
        style = buf[2]
        if style == ZHEX:
            header = self._read_hex_header()
        elif style in (ZBIN, ZBIN32):
            header = self._read_binary_header(style == ZBIN32)
        else:
            del buf[:2]
            raise FrameError(f"unknown header style {style:#04x}")
        if header is None:
            return None
        logger.debug("received %s header", header.name)
        if header.type in _SUBPACKET_HEADERS:
            self._in_subpacket = True
            self._partial.clear()
        elif header.type == FrameType.ZFIN:
            self.finished = True
        return header

    def _read_hex_header(self) -> Header | None:
        buf = self._buffer
        # ZPAD ZDLE 'B', fourteen hex digits, CR and LF.
        if len(buf) < 19:
            return None
        digits = bytes(buf[3:17])
        del buf[:19]
        if buf[:1] == bytes((XON,)):
            del buf[:1]
        try:
            raw = bytes.fromhex(digits.decode("ascii"))
        except ValueError as exc:
            raise FrameError(f"malformed hex header {digits!r}") from exc
        body, crc = raw[:5], raw[5:]
        if crc16(body) != int.from_bytes(crc, "big"):
            raise FrameError("hex header CRC mismatch")
        self._use_crc32 = False
        return Header(body[0], body[1:])

    def _read_binary_header(self, use_crc32: bool) -> Header | None:
        buf = self._buffer
        size = 9 if use_crc32 else 7
        decoded = _unescape_run(buf, 3, size)
        if decoded is None:
            return None
        raw, consumed = decoded
        del buf[:consumed]
        body = raw[:5]
        if use_crc32:
            valid = crc32(body) == int.from_bytes(raw[5:], "little")
        else:
            valid = crc16(body) == int.from_bytes(raw[5:], "big")
        if not valid:
            raise FrameError("binary header CRC mismatch")
        self._use_crc32 = use_crc32
        return Header(body[0], body[1:])

    def _read_subpacket(self) -> Subpacket | None:
        buf = self._buffer
        out = self._partial
        index = 0
        size = len(buf)
        while index < size:
            byte = buf[index]
            if byte in _FLOW_CONTROL:
                index += 1
                continue
            if byte != ZDLE:
                out.append(byte)
                index += 1
                continue
            if index + 1 >= size:
                break
            code = buf[index + 1]
            if code in _SUBPACKET_ENDS:
                decoded = _unescape_run(buf, index + 2, 4 if self._use_crc32 else 2)
                if decoded is None:
                    break
                check, consumed = decoded
                del buf[:consumed]
                data = bytes(out)
                out.clear()
                if code in (ZCRCE, ZCRCW):
                    self._in_subpacket = False
                self._verify_subpacket(data, code, check)
                return Subpacket(data, code)
            try:
                out.append(_unescape_byte(code))
            except FrameError:
                del buf[: index + 2]
                raise
            index += 2
        del buf[:index]
        return None

    def _verify_subpacket(self, data: bytes, end: int, check: bytes) -> None:
        covered = data + bytes((end,))
        if self._use_crc32:
            valid = crc32(covered) == int.from_bytes(check, "little")
        else:
            valid = crc16(covered) == int.from_bytes(check, "big")
        if not valid:
            raise FrameError("data subpacket CRC mismatch")


def _unescape_run(buf: bytearray, start: int, count: int) -> tuple[bytes, int] | None:
    out = bytearray()
    index = start
    size = len(buf)
    while len(out) < count:
        if index >= size:
            return None
        byte = buf[index]
        if byte in _FLOW_CONTROL:
            index += 1
            continue
        if byte != ZDLE:
            out.append(byte)
            index += 1
            continue
        if index + 1 >= size:
            return None
        code = buf[index + 1]
        if code in _SUBPACKET_ENDS:
            del buf[: index + 2]
            raise FrameError("unexpected subpacket end inside a header")
        out.append(_unescape_byte(code))
        index += 2
    return bytes(out), index


@dataclass(frozen=True)
class FileDetails:
    """File metadata carried by a ZFILE subpacket."""

    name: str
    size: int | None = None
    mtime: int = 0
    mode: int = 0
    files_remaining: int = 1
    bytes_remaining: int | None = None


def encode_file_info(details: FileDetails) -> bytes:
    size = details.size or 0
    remaining = details.bytes_remaining if details.bytes_remaining is not None else size
    fields = (
        f"{size} {details.mtime:o} {details.mode:o} 0 "
        f"{details.files_remaining} {remaining}"
    )
    return details.name.encode("utf-8") + b"\0" + fields.encode("ascii") + b"\0"


def parse_file_info(data: bytes) -> FileDetails:
    name_raw, _, rest = data.partition(b"\0")
    if not name_raw:
        raise FrameError("ZFILE subpacket without a file name")
    fields = rest.split(b"\0", 1)[0].split()

    def _field(index: int, base: int) -> int | None:
        if len(fields) <= index:
            return None
        try:
            return int(fields[index], base)
        except ValueError:
            return None

    files_remaining = _field(4, 10)
    return FileDetails(
        name=name_raw.decode("utf-8", errors="replace"),
        size=_field(0, 10),
        mtime=_field(1, 8) or 0,
        mode=_field(2, 8) or 0,
        files_remaining=files_remaining if files_remaining is not None else 1,
        bytes_remaining=_field(5, 10),
    )


class _ZmodemSession:
    """State shared by both directions of a ZMODEM exchange."""

    _trailer = b""

    def __init__(self, send: ByteSender, *, reply_timeout: float = 30.0) -> None:
        self._send = send
        self.reply_timeout = reply_timeout
        self._reader = FrameReader()
        self._events: asyncio.Queue[FrameEvent] = asyncio.Queue()
        self._trailer_left = len(self._trailer)
        self.finished = False

    def consume(self, data: bytes) -> bytes:
        """Feed inbound bytes; return any bytes that follow the end of the session."""

        if not self._reader.finished:
            for event in self._reader.feed(data):
                self._events.put_nowait(event)
            if not self._reader.finished:
                return b""
            data = self._reader.take_remainder()
        else:
            self._reader.feed(data)
            data = self._reader.take_remainder()
        return self._strip_trailer(data)

    def _strip_trailer(self, data: bytes) -> bytes:
        while self._trailer_left and data:
            if data[:1] != b"O":
                self._trailer_left = 0
                break
            data = data[1:]
            self._trailer_left -= 1
        return data

    async def abort(self) -> None:
        """Cancel the exchange with the standard CAN sequence."""

        if self.finished:
            return
        self.finished = True
        self._events.put_nowait(FileTransferAborted("transfer aborted locally"))
        logger.debug("sending ZMODEM abort sequence")
        await self._send(ABORT_SEQUENCE)

    async def _next_event(self) -> FrameEvent:
        try:
            event = await asyncio.wait_for(self._events.get(), self.reply_timeout)
        except asyncio.TimeoutError as exc:
            raise FileTransferError("timed out waiting for the peer") from exc
        if isinstance(event, FileTransferAborted):
            self.finished = True
            raise event
        return event

    async def _next_header(self) -> Header:
        while True:
            event = await self._next_event()
            if isinstance(event, Header):
                if event.type in (FrameType.ZCAN, FrameType.ZABORT, FrameType.ZFERR):
                    self.finished = True
                    raise FileTransferAborted(f"peer sent {event.name}")
                return event
            if isinstance(event, FrameError):
                logger.warning("ignoring damaged frame: %s", event)

    async def _send_hex(self, frame_type: int, payload: bytes = b"\0\0\0\0") -> None:
        logger.debug("sending %s header", FrameType(frame_type).name)
        await self._send(encode_hex_header(frame_type, payload))


class Offer:
    """A file the peer proposes to send; accepting it starts the data phase."""

    def __init__(self, session: "ZmodemReceiveSession", details: FileDetails) -> None:
        self._session = session
        self.details = details
        self.accepted = False
        self.on_input: InputHandler | None = None

    async def accept(self, on_input: InputHandler) -> None:
        self.accepted = True
        self.on_input = on_input
        await self._session._send_hex(FrameType.ZRPOS, position_payload(0))


OfferHandler = Callable[[Offer], Awaitable[None]]
FileEndHandler = Callable[[Offer], Awaitable[None]]


class ZmodemReceiveSession(_ZmodemSession):
    """Receive files from a remote ``sz``."""

    _trailer = SESSION_TRAILER

    def __init__(self, send: ByteSender, *, reply_timeout: float = 30.0) -> None:
        super().__init__(send, reply_timeout=reply_timeout)
        self._current: Offer | None = None
        self._offset = 0

    @property
    def in_file(self) -> bool:
        return self._current is not None

    async def start(self) -> None:
        await self._send_rinit()

    async def run(self, on_offer: OfferHandler, on_file_end: FileEndHandler) -> None:
        """Serve offers until the peer closes the session with ZFIN."""

        target: int | None = None
        discarding = False
        while True:
            event = await self._next_event()
            if isinstance(event, FrameError):
                logger.warning("damaged frame from sender: %s", event)
                if self._current is not None:
                    await self._send_hex(FrameType.ZRPOS, position_payload(self._offset))
                    self._reader.discard_subpackets()
                    discarding = True
                continue
            if isinstance(event, Subpacket):
                if target == FrameType.ZFILE:
                    target = None
                    await self._handle_offer(parse_file_info(event.data), on_offer)
                elif target == FrameType.ZSINIT:
                    target = None
                    await self._send_hex(FrameType.ZACK)
                elif target == FrameType.ZDATA and not discarding:
                    await self._handle_data(event)
                continue
            header_type = event.type
            if header_type in (FrameType.ZCAN, FrameType.ZABORT):
                self.finished = True
                raise FileTransferAborted(f"peer sent {event.name}")
            if header_type in _SUBPACKET_HEADERS:
                target = header_type
            if header_type == FrameType.ZDATA:
                discarding = self._current is None or event.position != self._offset
                if discarding:
                    await self._send_hex(FrameType.ZRPOS, position_payload(self._offset))
            elif header_type == FrameType.ZEOF:
                if self._current is not None and event.position == self._offset:
                    finished_offer = self._current
                    self._current = None
                    await on_file_end(finished_offer)
                    await self._send_rinit()
            elif header_type == FrameType.ZFIN:
                await self._send_hex(FrameType.ZFIN)
                self.finished = True
                return
            elif header_type == FrameType.ZCOMMAND:
                logger.warning("refusing remote ZCOMMAND")
            elif header_type == FrameType.ZFREECNT:
                await self._send_hex(FrameType.ZACK, position_payload(0))

    async def close(self) -> None:
        if not self.finished:
            await self.abort()

    async def _handle_offer(self, details: FileDetails, on_offer: OfferHandler) -> None:
        offer = Offer(self, details)
        await on_offer(offer)
        if offer.accepted:
            self._current = offer
            self._offset = 0
        else:
            await self._send_hex(FrameType.ZSKIP)

    async def _handle_data(self, packet: Subpacket) -> None:
        offer = self._current
        if offer is None or offer.on_input is None:
            return
        if packet.data:
            await offer.on_input(packet.data)
            self._offset += len(packet.data)
        if packet.end in (ZCRCQ, ZCRCW):
            await self._send_hex(FrameType.ZACK, position_payload(self._offset))

    async def _send_rinit(self) -> None:
        await self._send_hex(FrameType.ZRINIT, flags_payload(CANFDX | CANOVIO))


class OutboundTransfer:
    """One accepted file being streamed to the peer."""

    def __init__(
        self, session: "ZmodemSendSession", details: FileDetails, offset: int = 0
    ) -> None:
        self._session = session
        self.details = details
        self.offset = offset
        self._started = False

    async def send(self, chunk: bytes) -> None:
        session = self._session
        session._check_peer()
        frame = b""
        if not self._started:
            self._started = True
            frame = encode_binary_header(FrameType.ZDATA, position_payload(self.offset))
        await session._send(frame + encode_subpacket(chunk, ZCRCG))
        self.offset += len(chunk)

    async def end(self) -> None:
        """Close the data frame, send ZEOF and wait for the peer to acknowledge."""

        session = self._session
        frame = b""
        if not self._started:
            self._started = True
            frame = encode_binary_header(FrameType.ZDATA, position_payload(self.offset))
        frame += encode_subpacket(b"", ZCRCE)
        frame += encode_binary_header(FrameType.ZEOF, position_payload(self.offset))
        await session._send(frame)
        while True:
            header = await session._next_header()
            if header.type == FrameType.ZRINIT:
                break
            if header.type == FrameType.ZRPOS and header.position != self.offset:
                raise FileTransferError(
                    f"peer requested retransmission from {header.position}"
                )
        session._active = None


class ZmodemSendSession(_ZmodemSession):
    """Send files to a remote ``rz``."""

    def __init__(self, send: ByteSender, *, reply_timeout: float = 30.0) -> None:
        super().__init__(send, reply_timeout=reply_timeout)
        self._ready = False
        self._active: OutboundTransfer | None = None

    @property
    def in_file(self) -> bool:
        return self._active is not None

    async def send_offer(self, details: FileDetails) -> OutboundTransfer | None:
        """Offer ``details``; return ``None`` when the peer skips the file."""

        if not self._ready:
            while (await self._next_header()).type != FrameType.ZRINIT:
                continue
            self._ready = True
        frame = encode_binary_header(FrameType.ZFILE, flags_payload(ZCBIN))
        frame += encode_subpacket(encode_file_info(details), ZCRCW)
        await self._send(frame)
        while True:
            header = await self._next_header()
            if header.type == FrameType.ZRPOS:
                if header.position:
                    raise FileTransferError(
                        f"peer requested resume from {header.position}"
                    )
                self._active = OutboundTransfer(self, details)
                return self._active
            if header.type == FrameType.ZSKIP:
                logger.info("peer skipped %s", details.name)
                return None
            if header.type == FrameType.ZNAK:
                await self._send(frame)

    async def close(self) -> None:
        """Finish the session with ZFIN, or abort when a file is mid-stream."""

        if self.finished:
            return
        if self._active is not None:
            await self.abort()
            return
        await self._send_hex(FrameType.ZFIN)
        try:
            while (await self._next_header()).type != FrameType.ZFIN:
                continue
            await self._send(SESSION_TRAILER)
        finally:
            self.finished = True

    def _check_peer(self) -> None:
        while not self._events.empty():
            event = self._events.get_nowait()
            if isinstance(event, FileTransferAborted):
                self.finished = True
                raise event
            if isinstance(event, Header):
                if event.type in (FrameType.ZCAN, FrameType.ZABORT, FrameType.ZFERR):
                    self.finished = True
                    raise FileTransferAborted(f"peer sent {event.name}")
                if event.type == FrameType.ZRPOS:
                    raise FileTransferError(
                        f"peer requested retransmission from {event.position}"
                    )


__all__ = [
    "ABORT_SEQUENCE",
    "ByteSender",
    "FileDetails",
    "FileTransferAborted",
    "FileTransferError",
    "FrameError",
    "FrameReader",
    "FrameType",
    "Header",
    "Offer",
    "OutboundTransfer",
    "Subpacket",
    "TransferIOFailure",
    "TransferRejected",
    "ZmodemReceiveSession",
    "ZmodemSendSession",
    "crc16",
    "crc32",
    "encode_binary_header",
    "encode_file_info",
    "encode_hex_header",
    "encode_subpacket",
    "flags_payload",
    "parse_file_info",
    "position_payload",
    "zdle_escape",
]
