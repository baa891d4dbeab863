"""Frame checksum used by the UDP control protocol.

The checksum covers the variable part of the frame only: the 7 sync bytes
and the header byte that follows them are excluded, as is the trailing
checksum byte itself::

    55 55 55 55 55 55 55 xx | b[8] ... b[len-2] | checksum
                              \\____ summed ___/
"""

from __future__ import annotations

CHECKSUM_START = 8
MIN_CHECKSUM_FRAME = 10


def compute_checksum(data: bytes | bytearray | list[int]) -> int:
    """Sum of bytes 8..len-2 modulo 256.

    Returns 0 for sequences too short to carry a checksummed body.
    """
    if len(data) < MIN_CHECKSUM_FRAME:
        return 0
    return sum(data[CHECKSUM_START : len(data) - 1]) & 0xFF
