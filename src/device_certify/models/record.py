"""Certification result records.

A record is filled in while its case is classified and is not changed once
appended to the run's result list. :meth:`CertifyRecord.to_dict` produces
the camelCase schema consumed by report files, the CLI and the MCP server.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..protocol.framing import bytes_to_hex
from .case import CertifyCase
from .status import ResultStatus, TransportStatus, ValidationMode


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class CertifyRecord:
    """Outcome of executing one case."""

    time: str
    stage: str
    source: str
    category: str
    command: str
    variant: str
    command_key: str
    set_code: str | None
    reply_code: str | None
    tx_hex: str | None
    rx_hex: str | None = None
    expected_hex: str | None = None
    latency_ms: int | None = None
    transport_status: TransportStatus = TransportStatus.NO_REPLY
    status: ResultStatus = ResultStatus.FAIL
    validation_mode: ValidationMode = ValidationMode.STRICT_EXACT
    match_type: str = "UNSET"
    meaning: str | None = None
    parsed: dict[str, Any] | None = None
    note: str | None = None
    skip_reason: str | None = None
    value: int | None = None
    query_tx_hex: str | None = None
    query_rx_hex: str | None = None
    query_latency_ms: int | None = None
    query_transport_status: TransportStatus | None = None
    query_value: int | None = None
    expected_value: int | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def status_color(self) -> str:
        return self.status.color

    @classmethod
    def for_case(
        cls,
        case: CertifyCase,
        validation_mode: ValidationMode = ValidationMode.STRICT_EXACT,
        note: str | None = None,
        rx: bytes | None = None,
        latency_ms: int | None = None,
        expected_value: int | None = None,
    ) -> CertifyRecord:
        return cls(
            time=utc_now(),
            stage=case.stage,
            source=case.source,
            category=case.category,
            command=case.set_code or case.command_key,
            variant=case.description,
            command_key=case.command_key,
            set_code=case.set_code,
            reply_code=case.reply_code,
            tx_hex=bytes_to_hex(case.tx_bytes) if case.tx_bytes else None,
            rx_hex=bytes_to_hex(rx),
            expected_hex=bytes_to_hex(case.expected_reply),
            latency_ms=latency_ms,
            transport_status=TransportStatus.REPLY if rx is not None else TransportStatus.NO_REPLY,
            validation_mode=validation_mode,
            note=note,
            value=case.generated_value,
            expected_value=expected_value,
        )

    @classmethod
    def skipped(cls, case: CertifyCase, reason: str) -> CertifyRecord:
        """A record for a case that was never transmitted."""
        record = cls.for_case(case, expected_value=case.expected_query_value)
        record.status = ResultStatus.SKIPPED
        record.match_type = "SKIPPED"
        record.note = reason
        record.skip_reason = reason
        record.notes.append(reason)
        return record

    def add_note(self, note: str) -> None:
        """Append to both the joined ``note`` text and the ``notes`` list."""
        self.note = f"{self.note} | {note}" if self.note else note
        self.notes.append(note)

    def set_outcome(
        self,
        status: ResultStatus,
        match_type: str,
        meaning: str | None = None,
        note: str | None = None,
    ) -> CertifyRecord:
        self.status = status
        self.match_type = match_type
        if meaning:
            self.meaning = meaning
        if note:
            self.add_note(note)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": self.time,
            "stage": self.stage,
            "source": self.source,
            "category": self.category,
            "command": self.command,
            "variant": self.variant,
            "commandKey": self.command_key,
            "setCode": self.set_code,
            "replyCode": self.reply_code,
            "txHex": self.tx_hex,
            "rxHex": self.rx_hex,
            "expectedHex": self.expected_hex,
            "latencyMs": self.latency_ms,
            "transportStatus": self.transport_status.value,
            "status": self.status.value,
            "statusColor": self.status_color,
            "validationMode": self.validation_mode.value,
            "matchType": self.match_type,
            "meaning": self.meaning,
            "parsed": self.parsed,
            "note": self.note,
            "skipReason": self.skip_reason,
            "value": self.value,
            "queryTxHex": self.query_tx_hex,
            "queryRxHex": self.query_rx_hex,
            "queryLatencyMs": self.query_latency_ms,
            "queryTransportStatus": (
                self.query_transport_status.value if self.query_transport_status else None
            ),
            "queryValue": self.query_value,
            "expectedValue": self.expected_value,
            "notes": list(self.notes),
        }


def summarize(records: list[CertifyRecord]) -> dict[str, int]:
    """Count records per status."""
    return {
        "pass": sum(1 for r in records if r.status is ResultStatus.PASS),
        "fail": sum(1 for r in records if r.status is ResultStatus.FAIL),
        "noReply": sum(1 for r in records if r.status is ResultStatus.NO_REPLY),
        "skipped": sum(1 for r in records if r.status is ResultStatus.SKIPPED),
    }
