from __future__ import annotations

from shellbridge.runtime.file_transfer_protocols import (
    FrameType,
    encode_hex_header,
)
from shellbridge.runtime.transfer_detection import TransferDetector, TransferDirection


ZRQINIT = encode_hex_header(FrameType.ZRQINIT)
ZRINIT = encode_hex_header(FrameType.ZRINIT)


def test_plain_output_is_not_a_detection() -> None:
    detector = TransferDetector()

    assert detector.scan(b"ls -l\r\ntotal 0\r\n") is None
    assert detector.scan(b"") is None


def test_zrqinit_requests_a_receive() -> None:
    detection = TransferDetector().scan(b"rz waiting\r\n" + ZRQINIT)

    assert detection is not None
    assert detection.direction is TransferDirection.RECEIVE
    assert detection.display == b"rz waiting\r\n"
    assert detection.session_bytes == ZRQINIT


def test_zrinit_requests_a_send() -> None:
    detection = TransferDetector().scan(ZRINIT)

    assert detection is not None
    assert detection.direction is TransferDirection.SEND
    assert detection.display == b""


# Why: the signature may straddle two socket messages.
def test_signature_split_across_chunks_is_found() -> None:
    detector = TransferDetector()

    assert detector.scan(b"prompt$ " + ZRQINIT[:3]) is None
    detection = detector.scan(ZRQINIT[3:])

    assert detection is not None
    assert detection.direction is TransferDirection.RECEIVE
    assert detection.display == b""
    assert detection.session_bytes == ZRQINIT


def test_other_hex_headers_are_ignored() -> None:
    detector = TransferDetector()

    assert detector.scan(encode_hex_header(FrameType.ZACK)) is None


def test_reset_forgets_partial_signature() -> None:
    detector = TransferDetector()
    detector.scan(ZRQINIT[:4])
    detector.reset()

    assert detector.scan(ZRQINIT[4:]) is None
