"""Frame decoding helpers for UDP control protocol replies.

Frame layout::

    +---------------+--------+-- ... --+-----------+------------+-- ... --+--------------+----------+
    | Sync          | Header |  Body   | Code mark |   Code     |  Body   | Payload mark | Checksum |
    | 55 x 7        | 1 byte |         | 0xD0      | lo  hi     |         | 00 len 00    | 1 byte   |
    +---------------+--------+-- ... --+-----------+------------+-- ... --+--------------+----------+

- Sync: seven 0x55 bytes, present on every frame that travels over UDP
- Code: command code stored low byte first; rendered high byte first (``C201``)
- Payload: ``len`` data bytes that end immediately before the checksum
- Checksum: see :mod:`device_certify.utils.checksum`

Neither marker is escaped, so both are located heuristically. Absence of a
marker is a normal decode outcome and is reported as ``None``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from ..errors import ConfigurationError
from ..utils.checksum import compute_checksum

SYNC_BYTE = 0x55
SYNC_LENGTH = 7
MIN_FRAME_SIZE = 10
REPLY_CODE_MARKER = 0xD0
REPLY_CODE_SCAN_START = 8
REPLY_CODE_SCAN_LIMIT = 40
PAYLOAD_SCAN_WINDOW = 96

ACK_SUCCESS = 0x0001
ACK_STATUS_MEANING: dict[int, str] = {
    0x0001: "Success",
    0x0002: "Failure: unspecified reason",
    0x0003: "Failure: serial port not found",
    0x0004: "Failure: no response",
    0x8001: "Failure: busy",
    0x8002: "Failure: occupied",
}

_HEX_PREFIX = re.compile(r"0x", re.IGNORECASE)
_NON_HEX = re.compile(r"[^0-9A-Fa-f]")


@dataclass(frozen=True)
class PayloadDecode:
    """The payload block selected from the tail of a frame."""

    marker_index: int
    data_length: int
    data: bytes
    ambiguous: bool

    def __repr__(self) -> str:
        return (
            f"PayloadDecode(marker={self.marker_index}, len={self.data_length}, "
            f"data={self.data.hex(' ') if self.data else '(empty)'}, "
            f"ambiguous={self.ambiguous})"
        )


@dataclass(frozen=True)
class ReplyDecode:
    """Reply code and payload decoded from a received frame."""

    reply_code: str | None
    reply_code_index: int | None
    payload: PayloadDecode | None


# ─── CODES AND HEX TEXT ───────────────────────────────────────────────

def normalize_code(code: str | None) -> str | None:
    """Normalize a command code to four upper-case hex digits.

    ``"0xc203"``, ``"C203"`` and ``"c2 03"`` all become ``"C203"``.
    """
    if not code:
        return None
    text = _NON_HEX.sub("", _HEX_PREFIX.sub("", str(code), count=1))
    if not text:
        return None
    return text.upper().rjust(4, "0")


def to_code(code: str | None) -> str | None:
    """Render a code in display form, e.g. ``0xC203``."""
    normalized = normalize_code(code)
    return f"0x{normalized}" if normalized else None


def parse_hex_bytes(text: str | None) -> bytes:
    """Parse a loosely formatted hex string (``"55 55 0x1A,FF"``) into bytes.

    Raises:
        ConfigurationError: If a token is not exactly two hex digits.
    """
    if not text:
        return b""
    normalized = _NON_HEX.sub(" ", _HEX_PREFIX.sub("", text)).split()
    out = bytearray()
    for token in normalized:
        if len(token) != 2:
            raise ConfigurationError(f'Invalid hex token "{token}"')
        out.append(int(token, 16))
    return bytes(out)


def bytes_to_hex(data: bytes | None) -> str | None:
    if data is None:
        return None
    return data.hex(" ").upper()


def is_udp_frame(data: bytes) -> bool:
    """True when ``data`` starts with the 7-byte sync prefix."""
    if len(data) < MIN_FRAME_SIZE:
        return False
    return all(b == SYNC_BYTE for b in data[:SYNC_LENGTH])


# ─── COMPARISON ───────────────────────────────────────────────────────

def equal_bytes(a: bytes, b: bytes) -> bool:
    return bytes(a) == bytes(b)


def equal_ignoring_checksum(a: bytes, b: bytes) -> bool:
    """True when two frames differ at most in their final checksum byte."""
    if len(a) != len(b) or len(a) == 0:
        return False
    return bytes(a[:-1]) == bytes(b[:-1])


def checksum_matches(data: bytes) -> bool:
    """True when the trailing byte of ``data`` satisfies the checksum rule."""
    if len(data) < MIN_FRAME_SIZE:
        return False
    return compute_checksum(data) == data[-1]


# ─── DECODING ─────────────────────────────────────────────────────────

def decode_reply_code(data: bytes) -> tuple[str | None, int | None]:
    """Find the reply command code following the ``0xD0`` marker.

    Returns:
        ``(code, marker_index)``, or ``(None, None)`` if the marker does not
        appear within the scan window.
    """
    last = min(len(data) - 3, REPLY_CODE_SCAN_LIMIT)
    for index in range(REPLY_CODE_SCAN_START, last + 1):
        if data[index] != REPLY_CODE_MARKER:
            continue
        low = data[index + 1]
        high = data[index + 2]
        return f"{high:02X}{low:02X}", index
    return None, None


def extract_payload(data: bytes) -> PayloadDecode | None:
    """Locate the ``00 <len> 00`` payload block that ends before the checksum.

    The scan runs backward from the tail, so the candidate nearest the end
    of the frame is selected. When more than one position satisfies the
    length constraint the result is flagged ``ambiguous``.
    """
    if len(data) < 6:
        return None
    end = len(data) - 1
    candidates: list[tuple[int, int]] = []
    for index in range(len(data) - 4, max(0, len(data) - PAYLOAD_SCAN_WINDOW) - 1, -1):
        if data[index] != 0x00 or data[index + 2] != 0x00:
            continue
        length = data[index + 1]
        if index + 3 + length != end:
            continue
        candidates.append((index, length))

    if not candidates:
        return None

    index, length = candidates[0]
    return PayloadDecode(
        marker_index=index,
        data_length=length,
        data=bytes(data[index + 3 : end]),
        ambiguous=len(candidates) > 1,
    )


def locate_tail_block(data: bytes, preferred_length: int = 4) -> PayloadDecode | None:
    """Locate a block framed as ``<len_hi> <len_lo> 00 <data>`` before the checksum.

    Used for replies whose payload length is carried as a 16-bit big-endian
    value. Blocks of ``preferred_length`` win over other candidates; among
    equals the one nearest the tail is selected.
    """
    end = len(data) - 1
    candidates: list[tuple[int, int]] = []
    for index in range(0, len(data) - 3):
        if data[index + 2] != 0x00:
            continue
        length = (data[index] << 8) | data[index + 1]
        if index + 3 + length != end:
            continue
        candidates.append((index, length))

    if not candidates:
        return None

    preferred = [c for c in candidates if c[1] == preferred_length] or candidates
    index, length = max(preferred, key=lambda c: c[0])
    return PayloadDecode(
        marker_index=index,
        data_length=length,
        data=bytes(data[index + 3 : end]),
        ambiguous=len(candidates) > 1,
    )


def decode_reply(data: bytes) -> ReplyDecode:
    """Decode the reply code and tail payload of a received frame."""
    code, index = decode_reply_code(data)
    return ReplyDecode(
        reply_code=code,
        reply_code_index=index,
        payload=extract_payload(data),
    )


def parse_ack_status(decoded: ReplyDecode | None) -> int | None:
    """Little-endian status word from the first two payload bytes."""
    if decoded is None or decoded.payload is None:
        return None
    payload = decoded.payload.data
    if len(payload) < 2:
        return None
    return int.from_bytes(payload[:2], "little")


def ack_meaning(status: int | None) -> str | None:
    if status is None:
        return None
    return ACK_STATUS_MEANING.get(status, f"Status 0x{status:04X}")
