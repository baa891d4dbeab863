"""Executable certification cases."""

from __future__ import annotations

from dataclasses import dataclass

from ..protocol.framing import bytes_to_hex
from .truth import TruthCommandRow

STAGE_AUTO = "AUTO"
STAGE_POWER_MANUAL = "POWER_MANUAL"

SOURCE_TRUTH = "truth"
SOURCE_GENERATED = "generated"
SOURCE_SANITY = "sanity"


@dataclass(frozen=True)
class NumericSpec:
    """Synthesis source for one numeric-capable set code.

    ``checksum_index`` is always the last byte of the baseline request.
    """

    set_code: str
    value_index: int
    checksum_index: int
    base_row: TruthCommandRow
    template: bytes
    query_code: str | None = None
    query_row: TruthCommandRow | None = None


@dataclass(frozen=True)
class CertifyCase:
    """One request to send and judge. Built once per run, never mutated."""

    id: str
    stage: str
    source: str
    category: str
    description: str
    command_key: str
    set_code: str | None
    reply_code: str | None
    tx_bytes: bytes
    expected_reply: bytes | None = None
    generated_value: int | None = None
    serial_only: bool = False
    is_set_command: bool = False
    is_mode_change: bool = False
    is_power_command: bool = False
    is_disruptive: bool = False
    query_row: TruthCommandRow | None = None
    expected_query_value: int | None = None

    @property
    def tx_hex(self) -> str:
        return bytes_to_hex(self.tx_bytes) or ""

    def __repr__(self) -> str:
        value = "" if self.generated_value is None else f", value={self.generated_value}"
        return f"CertifyCase({self.command_key!r}, set={self.set_code}{value})"
