"""Passive scanner that spots a ZMODEM session starting in terminal output."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TransferDirection(Enum):
    """Direction of a transfer from the local side's point of view."""

    RECEIVE = "receive"
    SEND = "send"


# Hex header prefix shared by ZRQINIT ("00") and ZRINIT ("01").
SIGNATURE_PREFIX = b"**\x18B0"

_DIRECTIONS = {
    ord("0"): TransferDirection.RECEIVE,
    ord("1"): TransferDirection.SEND,
}

_SIGNATURE_LENGTH = len(SIGNATURE_PREFIX) + 1


@dataclass(frozen=True)
class Detection:
    """Result of finding a session start inside an inbound chunk."""

    direction: TransferDirection
    display: bytes
    session_bytes: bytes


class TransferDetector:
    """Scan inbound bytes for a ZMODEM start signature.

    Bytes are passed straight through so the display never waits on the
    scanner. The last few bytes of each chunk are remembered so a signature
    split across chunks is still found; the part of a match that was already
    displayed is replayed into the session bytes.
    """

    def __init__(self) -> None:
        self._tail = b""

    def reset(self) -> None:
        self._tail = b""

    def scan(self, data: bytes) -> Detection | None:
        """Return a :class:`Detection` when ``data`` completes a signature."""

        if not data:
            return None
        combined = self._tail + data
        start = 0
        while True:
            index = combined.find(SIGNATURE_PREFIX, start)
            if index < 0 or index + _SIGNATURE_LENGTH > len(combined):
                break
            direction = _DIRECTIONS.get(combined[index + len(SIGNATURE_PREFIX)])
            if direction is None:
                start = index + 1
                continue
            seen = len(self._tail)
            self._tail = b""
            display = combined[seen:index] if index > seen else b""
            return Detection(direction, display, combined[index:])
        self._tail = combined[-(_SIGNATURE_LENGTH - 1) :]
        return None


__all__ = ["Detection", "SIGNATURE_PREFIX", "TransferDetector", "TransferDirection"]
