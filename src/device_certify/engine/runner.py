"""Sequential execution loop: send each case, wait for its reply, classify it.

Per case::

    PENDING -> SENT -> REPLIED | TIMED_OUT -> CLASSIFIED

Cases never overlap. After each executed case the loop pauses for the
rate-limit interval, or longer when the command changes device state.
There are no retries; a timeout is final for that case.
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Protocol

from ..models.case import CertifyCase
from ..models.record import CertifyRecord, summarize
from ..models.status import ResultStatus, TransportStatus, ValidationMode
from ..models.truth import TruthCommandRow, profile_exclusions
from ..protocol.commands import (
    DISPLAY_MODE_VALUE_INDEX,
    NUMERIC_VALUE_INDEX,
    Command,
    value_label,
    verify_synthesized_checksum,
)
from ..protocol.framing import (
    ACK_SUCCESS,
    ReplyDecode,
    ack_meaning,
    bytes_to_hex,
    decode_reply,
    equal_bytes,
    equal_ignoring_checksum,
    normalize_code,
    parse_ack_status,
    parse_hex_bytes,
)
from ..protocol.parser import SEMANTIC_PARSERS, ParseResult, parse_hdmi_presence_frame, parse_semantic
from ..transport.udp_connection import SendResult, UDPConnection
from .cases import (
    RunMode,
    TruthCatalog,
    build_cases,
    log_numeric_specs,
    mode_name,
    verify_truth_checksums,
)
from .options import CertifyOptions
from .policy import ResolvedPolicy, is_reply_code_accepted, resolve_code_policy, resolve_policy

logger = logging.getLogger(__name__)

PROFILE_EXVIEW_AIO = "exview-aio"
SPLIT_SCREEN_SKIP_REASON = "No reply in split-screen mode (FW limitation)"
POWER_EXCLUDED_REASON = "Power stage excluded (add --include-power)"
SERIAL_ONLY_REASON = "Serial-only or non-UDP request frame"


class CaseState(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    REPLIED = "REPLIED"
    TIMED_OUT = "TIMED_OUT"
    CLASSIFIED = "CLASSIFIED"


class Transport(Protocol):
    def open(self) -> tuple[str, int]: ...

    def close(self) -> None: ...

    def send_and_receive(self, data: bytes, timeout_ms: float = ...) -> SendResult: ...


def wait_for_enter(prompt: str) -> None:
    """Block until the operator presses Enter; continue at once without a TTY."""
    if not sys.stdin or not sys.stdin.isatty():
        logger.info("%s (stdin not TTY, auto-continue)", prompt)
        return
    input(f"{prompt}\n")


def infer_expected_value(case: CertifyCase) -> int | None:
    """Value a closed-loop query should read back after this case."""
    if case.expected_query_value is not None:
        return case.expected_query_value
    if case.generated_value is not None:
        return case.generated_value
    code = normalize_code(case.set_code)
    if not code:
        return None
    mapping = NUMERIC_VALUE_INDEX.get(code)
    if mapping is not None and mapping.value_index < len(case.tx_bytes):
        return case.tx_bytes[mapping.value_index]
    if code == Command.SET_DISPLAY_MODE.value and len(case.tx_bytes) > DISPLAY_MODE_VALUE_INDEX:
        return case.tx_bytes[DISPLAY_MODE_VALUE_INDEX]
    return None


# ─── CLASSIFICATION ───────────────────────────────────────────────────

def _apply_parse(record: CertifyRecord, parsed: ParseResult) -> None:
    record.parsed = parsed.parsed
    record.meaning = parsed.meaning
    if parsed.note:
        record.notes.append(parsed.note)


def classify(
    case: CertifyCase,
    policy: ResolvedPolicy,
    result: SendResult,
    profile: str = PROFILE_EXVIEW_AIO,
    notes: list[str] | None = None,
) -> CertifyRecord:
    """Judge one reply (or its absence) against the case's policy."""
    record = CertifyRecord.for_case(
        case,
        validation_mode=policy.validation_mode,
        note=policy.note,
        rx=result.rx,
        latency_ms=result.latency_ms,
        expected_value=infer_expected_value(case),
    )
    record.notes.extend(notes or [])
    rx = result.rx
    decoded: ReplyDecode | None = decode_reply(rx) if rx is not None else None
    is_hdmi = policy.parser_code == Command.HDMI_PRESENCE.value

    if decoded is not None and decoded.payload is not None and decoded.payload.ambiguous and not is_hdmi:
        record.notes.append("Ambiguous payload marker in reply; used marker nearest the tail")
    if policy.accept_any_reply_code and decoded is not None and decoded.reply_code:
        record.add_note(f"Observed reply code: 0x{decoded.reply_code}")

    if policy.validation_mode is ValidationMode.EXPECTED_NO_REPLY:
        if rx is None:
            return record.set_outcome(
                ResultStatus.PASS, "EXPECTED_NO_REPLY",
                policy.note or "No reply expected for this command",
            )
        if decoded is None or decoded.payload is None or not policy.parser_code:
            return record.set_outcome(
                ResultStatus.PASS, "EXPECTED_NO_REPLY_WITH_REPLY",
                "Reply received even though no-reply was expected",
            )
        _apply_parse(record, parse_semantic(policy.parser_code, decoded.payload.data))
        return record.set_outcome(
            ResultStatus.PASS, "EXPECTED_NO_REPLY_WITH_REPLY",
            "Reply received; treated as pass for expected-no-reply mode",
        )

    if rx is None:
        if profile == PROFILE_EXVIEW_AIO and normalize_code(case.set_code) == Command.QUERY_VIDEO_SOURCE.value:
            record.skip_reason = SPLIT_SCREEN_SKIP_REASON
            return record.set_outcome(
                ResultStatus.SKIPPED, "SKIPPED", SPLIT_SCREEN_SKIP_REASON, SPLIT_SCREEN_SKIP_REASON
            )
        if policy.allow_no_reply_quirk:
            return record.set_outcome(
                ResultStatus.NO_REPLY, "NO_REPLY_QUIRK", policy.note or "Known device quirk: no reply"
            )
        return record.set_outcome(ResultStatus.NO_REPLY, "NO_REPLY", "No reply within timeout")

    actual_code = decoded.reply_code if decoded else None
    if not policy.accept_any_reply_code and not is_reply_code_accepted(
        case.reply_code, actual_code, policy.allowed_reply_codes
    ):
        return record.set_outcome(
            ResultStatus.FAIL, "REPLY_CODE_MISMATCH",
            f"replyCode={f'0x{actual_code}' if actual_code else 'unknown'}, "
            f"expected={case.reply_code or 'unknown'}",
        )

    if policy.validation_mode is ValidationMode.STRICT_EXACT:
        expected = case.expected_reply
        if expected is not None and equal_bytes(expected, rx):
            return record.set_outcome(ResultStatus.PASS, "EXACT", "Reply matches expected template")
        if expected is not None and equal_ignoring_checksum(expected, rx):
            return record.set_outcome(
                ResultStatus.PASS, "CHECKSUM_DIFF", "Reply matches expected template except checksum"
            )
        ack = parse_ack_status(decoded)
        if ack == ACK_SUCCESS:
            return record.set_outcome(ResultStatus.PASS, "ACK_SUCCESS", ack_meaning(ack))
        if expected is None:
            return record.set_outcome(
                ResultStatus.PASS, "RX_WITHOUT_TEMPLATE", "Reply received (no expected template)"
            )
        return record.set_outcome(ResultStatus.FAIL, "MISMATCH", "Reply did not match expected template")

    if not policy.parser_code:
        return record.set_outcome(
            ResultStatus.FAIL, "PARSER_NOT_CONFIGURED", "Semantic parser not configured for command"
        )

    if is_hdmi:
        parsed = parse_hdmi_presence_frame(rx)
    else:
        if decoded is None or decoded.payload is None:
            return record.set_outcome(
                ResultStatus.FAIL, "PAYLOAD_NOT_FOUND", "Could not locate payload marker in reply"
            )
        parsed = parse_semantic(policy.parser_code, decoded.payload.data)
    _apply_parse(record, parsed)
    if parsed.value is not None and case.generated_value is None:
        record.value = parsed.value

    if parsed.ok:
        return record.set_outcome(ResultStatus.PASS, policy.validation_mode.value, parsed.meaning)
    return record.set_outcome(ResultStatus.FAIL, "SEMANTIC_PARSE_FAIL", parsed.meaning, parsed.note)


# ─── EXECUTION ────────────────────────────────────────────────────────

def self_check(case: CertifyCase) -> list[str]:
    """Verify a synthesized request's checksum; returns warnings."""
    if case.generated_value is None:
        return []
    check = verify_synthesized_checksum(case.tx_bytes, case.set_code, case.generated_value)
    formula = "" if check.formula is None else f" formula=0x{check.formula:02X}"
    logger.info(
        "[SELF-CHECK] %s computed=0x%02X last=0x%02X%s",
        case.command_key, check.computed, check.actual, formula,
    )
    for warning in check.warnings:
        logger.warning("%s: %s", case.command_key, warning)
    return check.warnings


def run_closed_loop(
    connection: Transport,
    case: CertifyCase,
    record: CertifyRecord,
    options: CertifyOptions,
    sleep: Callable[[float], None] = time.sleep,
) -> CertifyRecord:
    """Read the value back with the paired query and compare."""
    query_row: TruthCommandRow | None = case.query_row
    expected = record.expected_value
    if query_row is None or expected is None:
        return record

    sleep(options.settle_set_ms / 1000)
    query_tx = parse_hex_bytes(query_row.request_hex)
    result = connection.send_and_receive(query_tx, options.timeout_ms)
    record.query_tx_hex = bytes_to_hex(query_tx)
    record.query_rx_hex = bytes_to_hex(result.rx)
    record.query_latency_ms = result.latency_ms
    record.query_transport_status = TransportStatus.REPLY if result.replied else TransportStatus.NO_REPLY
    if result.rx is None:
        record.add_note(f"Closed-loop query {query_row.command_key} got no reply")
        return record

    policy = resolve_code_policy(query_row.set_code, f"{query_row.category} {query_row.description}")
    parser_code = policy.parser_code
    if parser_code is None and query_row.set_code in SEMANTIC_PARSERS:
        parser_code = query_row.set_code
    decoded = decode_reply(result.rx)
    if not parser_code or decoded.payload is None:
        record.add_note(f"Closed-loop reply from {query_row.command_key} could not be parsed")
        return record

    parsed = parse_semantic(parser_code, decoded.payload.data)
    record.query_value = parsed.value
    if parsed.value != expected:
        label = value_label(case.set_code)
        record.set_outcome(
            ResultStatus.FAIL, "CLOSED_LOOP_MISMATCH",
            f"{label} readback={parsed.value}, expected={expected}",
            parsed.note,
        )
    return record


def execute_case(
    connection: Transport,
    case: CertifyCase,
    options: CertifyOptions,
    sleep: Callable[[float], None] = time.sleep,
) -> CertifyRecord:
    """Send one case and classify the outcome."""
    log_hex = logger.info if options.debug_hex else logger.debug
    log_hex("[TX] %s %s", case.command_key, case.tx_hex)
    warnings = self_check(case)
    policy = resolve_policy(case, options.profile)

    logger.debug("%s %s", case.command_key, CaseState.SENT.value)
    result = connection.send_and_receive(case.tx_bytes, options.timeout_ms)
    state = CaseState.REPLIED if result.replied else CaseState.TIMED_OUT
    logger.debug("%s %s", case.command_key, state.value)
    if result.rx is not None:
        decoded = decode_reply(result.rx)
        payload = decoded.payload
        log_hex(
            "[RX] %s replyCode=%s payload=%s %s",
            case.command_key,
            f"0x{decoded.reply_code}" if decoded.reply_code else "unknown",
            f"len={payload.data_length} marker={payload.marker_index}" if payload else "none",
            bytes_to_hex(result.rx),
        )

    record = classify(case, policy, result, options.profile, warnings)
    if options.closed_loop and record.status is ResultStatus.PASS and case.is_set_command:
        record = run_closed_loop(connection, case, record, options, sleep)
    logger.debug("%s %s", case.command_key, CaseState.CLASSIFIED.value)
    return record


def progress_line(index: int, total: int, record: CertifyRecord) -> str:
    latency = "" if record.latency_ms is None else f" latency={record.latency_ms}ms"
    value = "" if record.value is None else f" {value_label(record.set_code)}={record.value}"
    meaning = f' meaning="{record.meaning}"' if record.meaning else ""
    return (
        f"[{index}/{total}] {record.command}{value} {record.status.value}{latency} "
        f"match={record.match_type}{meaning}"
    )


def next_delay_ms(case: CertifyCase, options: CertifyOptions) -> float:
    """Pause before the next case."""
    delay = options.rate_interval_ms
    if case.is_mode_change:
        return max(delay, options.settle_mode_ms)
    if case.is_set_command:
        return max(delay, options.settle_set_ms)
    return delay


def skip_reason(
    case: CertifyCase,
    mode: str,
    options: CertifyOptions,
    exclusions: dict[str, str],
) -> str | None:
    """Reason to record ``case`` as SKIPPED without sending it, if any."""
    if case.is_power_command and mode in ("suite", "issues") and not options.include_power:
        return POWER_EXCLUDED_REASON
    if case.serial_only:
        return SERIAL_ONLY_REASON
    if mode == "suite":
        return exclusions.get(normalize_code(case.set_code) or "")
    return None


def run_cases(
    cases: list[CertifyCase],
    options: CertifyOptions,
    connection: Transport,
    mode: str = "suite",
    exclusions: dict[str, str] | None = None,
    confirm: Callable[[str], None] = wait_for_enter,
    sleep: Callable[[float], None] = time.sleep,
) -> list[CertifyRecord]:
    """Execute ``cases`` in order over an opened connection.

    The connection is closed when the loop ends, including on error.
    """
    exclusions = exclusions or {}
    records: list[CertifyRecord] = []
    disruptive_prompts = options.prompt_each and mode in ("suite", "issues") and options.include_power
    delay_ms: float = 0

    try:
        for index, case in enumerate(cases, start=1):
            if delay_ms > 0:
                sleep(delay_ms / 1000)

            reason = skip_reason(case, mode, options, exclusions)
            if reason:
                record = CertifyRecord.skipped(case, reason)
                records.append(record)
                if reason not in (POWER_EXCLUDED_REASON, SERIAL_ONLY_REASON):
                    logger.info('[SKIP] %s %s reason="%s"', record.command, record.variant, reason)
                logger.info(progress_line(index, len(cases), record))
                delay_ms = 0
                continue

            if options.prompt_each and not disruptive_prompts:
                confirm(
                    f"Ready to run {case.command_key}. Set screen/device state as needed, then press Enter."
                )
            elif disruptive_prompts and case.is_power_command and case.is_disruptive:
                confirm(f"Manual stage: press Enter to execute disruptive command {case.command_key}")

            record = execute_case(connection, case, options, sleep)
            records.append(record)
            if record.status is ResultStatus.SKIPPED and record.skip_reason:
                logger.info('[SKIP] %s %s reason="%s"', record.command, record.variant, record.skip_reason)
            logger.info(progress_line(index, len(cases), record))
            delay_ms = next_delay_ms(case, options)
    finally:
        connection.close()
    return records


@dataclass
class RunResult:
    mode: str
    started_at: datetime
    finished_at: datetime
    records: list[CertifyRecord] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return summarize(self.records)


def run(
    mode: RunMode,
    rows: list[TruthCommandRow],
    options: CertifyOptions,
    exclusions: dict[str, str] | None = None,
    connection: Transport | None = None,
    confirm: Callable[[str], None] = wait_for_enter,
    sleep: Callable[[float], None] = time.sleep,
) -> RunResult:
    """Build the cases for ``mode`` and execute them.

    All configuration problems surface as
    :class:`~device_certify.errors.ConfigurationError` before the socket is
    bound or any request is sent.

    Args:
        mode: Run mode selection.
        rows: Truth dataset rows.
        options: Transport and pacing settings.
        exclusions: Suite exclusions (code -> reason); defaults to the profile's.
        connection: Transport to use; a :class:`UDPConnection` by default.
    """
    options.validate()
    name = mode_name(mode)
    catalog = TruthCatalog.from_rows(rows)

    checked, mismatches = verify_truth_checksums(rows)
    logger.info("Checksum self-check (bytes 9..len-2): checked=%d, mismatches=%d", checked, mismatches)
    if mismatches:
        logger.warning("Some truth request packets do not satisfy the checksum rule")
    log_numeric_specs(catalog.numeric_specs)

    cases = build_cases(mode, catalog)
    if name == "suite":
        if exclusions is None:
            exclusions = profile_exclusions(options.profile)
        if exclusions:
            listed = ", ".join(f"0x{code} ({reason})" for code, reason in exclusions.items())
            logger.info('Suite exclusions for profile "%s": %s', options.profile, listed)
    power_cases = sum(1 for c in cases if c.is_power_command)
    if name in ("suite", "issues") and not options.include_power and power_cases:
        logger.info(
            "Power stage excluded by default: %d case(s) skipped. Use --include-power to run them.",
            power_cases,
        )

    if connection is None:
        connection = UDPConnection(options.target_host, options.target_port, options.local_port)
    connection.open()
    logger.info("Profile: %s", options.profile)

    started_at = datetime.now(timezone.utc)
    records = run_cases(cases, options, connection, name, exclusions or {}, confirm, sleep)
    finished_at = datetime.now(timezone.utc)

    result = RunResult(mode=name, started_at=started_at, finished_at=finished_at, records=records)
    s = result.summary
    logger.info(
        "Completed %d case(s): PASS=%d FAIL=%d NO_REPLY=%d SKIPPED=%d",
        len(records), s["pass"], s["fail"], s["noReply"], s["skipped"],
    )
    return result
