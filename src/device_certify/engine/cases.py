"""Turn truth rows into ordered lists of executable cases.

A run selects cases in one of four modes, modelled as the :data:`RunMode`
union and consumed by :func:`build_cases`:

- :class:`SingleRun`: one command key or set code (numeric codes need a value)
- :class:`SuiteRun`: every truth row, with 0..100 sweeps for numeric codes
- :class:`SanityRun`: a three-case smoke subset
- :class:`IssuesRun`: replay of FAIL / NO_REPLY / SKIPPED records from an earlier run

Power cases are always moved to the end of suite and replay lists.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from ..errors import ConfigurationError
from ..models.case import (
    SOURCE_GENERATED,
    SOURCE_SANITY,
    SOURCE_TRUTH,
    STAGE_AUTO,
    STAGE_POWER_MANUAL,
    CertifyCase,
    NumericSpec,
)
from ..models.status import ISSUE_STATUSES
from ..models.truth import IssueRecord, TruthCommandRow, load_issue_records
from ..protocol.commands import (
    CLOSED_LOOP_QUERY_BY_SET,
    DISPLAY_MODE_VALUE_INDEX,
    NUMERIC_MAX,
    NUMERIC_MIN,
    NUMERIC_SET_CODES,
    NUMERIC_VALUE_INDEX,
    POWER_SET_CODES,
    SUITE_VALUES,
    Command,
    synthesize_numeric_request,
    value_label,
)
from ..protocol.framing import is_udp_frame, normalize_code, parse_hex_bytes, to_code
from ..utils.checksum import compute_checksum

logger = logging.getLogger(__name__)

SANITY_VALUE = 50


# ─── ROW CLASSIFICATION ───────────────────────────────────────────────
# Best-effort text heuristics over the truth row's free-text fields.

def is_set_command(row: TruthCommandRow) -> bool:
    return row.category.lower().startswith("set ")


def is_mode_change_command(row: TruthCommandRow) -> bool:
    text = f"{row.category} {row.description} {row.instruction}".lower()
    return (
        "video source" in text
        or "screen display" in text
        or "split screen" in text
        or ("set " in text and "mode" in text)
    )


def is_power_command(row: TruthCommandRow) -> bool:
    return row.set_code in POWER_SET_CODES


def is_disruptive_command(row: TruthCommandRow) -> bool:
    text = f"{row.category} {row.description} {row.remark}".lower()
    return any(word in text for word in ("sleep", "standby", "restart", "power off"))


def is_serial_only(row: TruthCommandRow, tx_bytes: bytes) -> bool:
    """True when the row cannot be exercised over UDP."""
    if "SERIAL" in (row.transport or "").upper():
        return True
    combined = f"{row.remark} {row.instruction} {row.excluded_reason or ''}".lower()
    if "serial only" in combined or "serial-only" in combined:
        return True
    if "does not support udp" in combined:
        return True
    if "excluded" in combined and "serial" in combined:
        return True
    return not is_udp_frame(tx_bytes)


# ─── TRUTH CATALOG ────────────────────────────────────────────────────

def derive_numeric_specs(by_set_code: dict[str, list[TruthCommandRow]]) -> dict[str, NumericSpec]:
    """Build a synthesis spec for every numeric code present in the truth set.

    Raises:
        ConfigurationError: If a code lacks an index mapping or its checksum
            offset is not the template's last byte.
    """
    specs: dict[str, NumericSpec] = {}
    for set_code in NUMERIC_SET_CODES:
        rows = by_set_code.get(set_code, [])
        if not rows:
            continue
        mapping = NUMERIC_VALUE_INDEX.get(set_code)
        if mapping is None:
            raise ConfigurationError(f"Missing manual numeric index for {to_code(set_code)}")

        base_row = rows[0]
        template = parse_hex_bytes(base_row.request_hex)
        if mapping.value_index >= len(template) or mapping.checksum_index >= len(template):
            raise ConfigurationError(
                f"Manual index out of bounds for {to_code(set_code)}: request length={len(template)}"
            )
        if mapping.checksum_index != len(template) - 1:
            raise ConfigurationError(f"Manual checksum index is not last byte for {to_code(set_code)}")

        query_code = CLOSED_LOOP_QUERY_BY_SET.get(set_code)
        query_rows = by_set_code.get(query_code, []) if query_code else []
        specs[set_code] = NumericSpec(
            set_code=set_code,
            value_index=mapping.value_index,
            checksum_index=mapping.checksum_index,
            base_row=base_row,
            template=template,
            query_code=query_code,
            query_row=query_rows[0] if query_rows else None,
        )
    return specs


@dataclass
class TruthCatalog:
    """Truth rows indexed by command key and by set code."""

    rows: list[TruthCommandRow]
    by_key: dict[str, TruthCommandRow] = field(default_factory=dict)
    by_set_code: dict[str, list[TruthCommandRow]] = field(default_factory=dict)
    numeric_specs: dict[str, NumericSpec] = field(default_factory=dict)

    @classmethod
    def from_rows(cls, rows: list[TruthCommandRow]) -> TruthCatalog:
        catalog = cls(rows=list(rows))
        for row in rows:
            catalog.by_key[row.command_key] = row
            if row.set_code:
                catalog.by_set_code.setdefault(row.set_code, []).append(row)
        catalog.numeric_specs = derive_numeric_specs(catalog.by_set_code)
        return catalog

    def first_row(self, code: str | None) -> TruthCommandRow | None:
        rows = self.by_set_code.get(normalize_code(code) or "", [])
        return rows[0] if rows else None

    def truth_case(self, row: TruthCommandRow, source: str = SOURCE_TRUTH) -> CertifyCase:
        """Case for ``row`` with its closed-loop query row attached, if any."""
        query_code = CLOSED_LOOP_QUERY_BY_SET.get(row.set_code or "")
        return build_truth_case(row, source, self.first_row(query_code))


def verify_truth_checksums(rows: list[TruthCommandRow]) -> tuple[int, int]:
    """Check UDP-framed truth requests against the checksum rule.

    Returns:
        ``(checked, mismatches)``.
    """
    checked = 0
    mismatches = 0
    for row in rows:
        request = parse_hex_bytes(row.request_hex)
        if not is_udp_frame(request):
            continue
        checked += 1
        if compute_checksum(request) != request[-1]:
            mismatches += 1
            logger.debug("Checksum mismatch in truth row %s", row.command_key)
    return checked, mismatches


def log_numeric_specs(specs: dict[str, NumericSpec]) -> None:
    logger.info("Numeric command map (manual value/checksum indices):")
    for set_code in NUMERIC_SET_CODES:
        spec = specs.get(set_code)
        if spec is None:
            logger.info("  %s: missing from truth", to_code(set_code))
            continue
        logger.info(
            "  %s: valueIndex=%d, checksumIndex=%d, baseRow=%d",
            to_code(set_code), spec.value_index, spec.checksum_index, spec.base_row.row_number,
        )


# ─── CASE CONSTRUCTION ────────────────────────────────────────────────

def build_generated_case(spec: NumericSpec, value: int, source: str = SOURCE_GENERATED) -> CertifyCase:
    """Synthesize a numeric set case from its baseline truth row."""
    tx_bytes = synthesize_numeric_request(
        spec.template, spec.set_code, value, spec.value_index, spec.checksum_index
    )
    base = spec.base_row
    key = f"{base.command_key}:gen-{value}"
    return CertifyCase(
        id=key,
        stage=STAGE_POWER_MANUAL if spec.set_code in POWER_SET_CODES else STAGE_AUTO,
        source=source,
        category=base.category,
        description=f"{value_label(spec.set_code)}={value}",
        command_key=key,
        set_code=to_code(spec.set_code),
        reply_code=base.reply_command_code,
        tx_bytes=tx_bytes,
        expected_reply=parse_hex_bytes(base.reply_hex) if base.reply_hex else None,
        generated_value=value,
        is_set_command=True,
        is_mode_change=is_mode_change_command(base),
        query_row=spec.query_row,
        expected_query_value=value,
    )


def build_truth_case(
    row: TruthCommandRow,
    source: str = SOURCE_TRUTH,
    query_row: TruthCommandRow | None = None,
) -> CertifyCase:
    """Use a truth row verbatim."""
    tx_bytes = parse_hex_bytes(row.request_hex)
    expected_query_value = None
    if row.set_code == Command.SET_DISPLAY_MODE.value and len(tx_bytes) > DISPLAY_MODE_VALUE_INDEX:
        expected_query_value = tx_bytes[DISPLAY_MODE_VALUE_INDEX]
    return CertifyCase(
        id=row.command_key,
        stage=STAGE_POWER_MANUAL if is_power_command(row) else STAGE_AUTO,
        source=source,
        category=row.category,
        description=row.description or row.remark or row.command_key,
        command_key=row.command_key,
        set_code=row.set_command_code,
        reply_code=row.reply_command_code,
        tx_bytes=tx_bytes,
        expected_reply=parse_hex_bytes(row.reply_hex) if row.reply_hex else None,
        serial_only=is_serial_only(row, tx_bytes),
        is_set_command=is_set_command(row),
        is_mode_change=is_mode_change_command(row),
        is_power_command=is_power_command(row),
        is_disruptive=is_disruptive_command(row),
        query_row=query_row,
        expected_query_value=expected_query_value,
    )


def _power_last(cases: list[CertifyCase]) -> list[CertifyCase]:
    return [c for c in cases if not c.is_power_command] + [c for c in cases if c.is_power_command]


def _check_value(value: int | None) -> None:
    if value is not None and not NUMERIC_MIN <= value <= NUMERIC_MAX:
        raise ConfigurationError(f"Invalid value: {value} (expected {NUMERIC_MIN}-{NUMERIC_MAX})")


def build_single_case(catalog: TruthCatalog, selector: str, value: int | None = None) -> CertifyCase:
    """Resolve a command key or set code to one case.

    Raises:
        ConfigurationError: For unknown selectors, a missing value on a
            numeric code, or a value on a non-numeric code.
    """
    _check_value(value)
    row = catalog.by_key.get(selector)
    if row is not None:
        spec = catalog.numeric_specs.get(row.set_code or "")
        if spec is not None and value is not None:
            return build_generated_case(spec, value)
        return catalog.truth_case(row)

    code = normalize_code(selector)
    if not code:
        raise ConfigurationError(f"Unknown single selector: {selector}")
    matching = catalog.by_set_code.get(code, [])
    if not matching:
        raise ConfigurationError(f"No command found for setCommandCode {selector}")

    spec = catalog.numeric_specs.get(code)
    if spec is not None:
        if value is None:
            raise ConfigurationError(
                f"Numeric command {selector} requires a value 0-100 for a deterministic single run"
            )
        return build_generated_case(spec, value)

    if value is not None:
        raise ConfigurationError(f"A value is not valid for non-numeric command {selector}")
    return catalog.truth_case(matching[0])


def build_suite_cases(catalog: TruthCatalog) -> list[CertifyCase]:
    """All truth rows, with each numeric code expanded once into a 0..100 sweep."""
    cases: list[CertifyCase] = []
    generated: set[str] = set()
    for row in catalog.rows:
        spec = catalog.numeric_specs.get(row.set_code or "")
        if spec is not None:
            if spec.set_code not in generated:
                cases.extend(build_generated_case(spec, value) for value in SUITE_VALUES)
                generated.add(spec.set_code)
            continue
        cases.append(catalog.truth_case(row))
    return _power_last(cases)


def build_sanity_cases(catalog: TruthCatalog) -> list[CertifyCase]:
    """Android source selection, volume=50, brightness=50."""
    source_rows = catalog.by_set_code.get(Command.SET_VIDEO_SOURCE.value, [])
    android_row = (
        next((r for r in source_rows if "android" in r.description.lower()), None)
        or next((r for r in source_rows if r.description.strip().startswith("0")), None)
        or (source_rows[0] if source_rows else None)
    )
    if android_row is None:
        raise ConfigurationError("Unable to locate C213 Android truth row for sanity test")
    cases = [catalog.truth_case(android_row, SOURCE_SANITY)]

    for code in (Command.SET_VOLUME.value, Command.SET_BRIGHTNESS.value):
        spec = catalog.numeric_specs.get(code)
        if spec is None:
            raise ConfigurationError(f"Unable to locate {code} truth rows for sanity test")
        cases.append(build_generated_case(spec, SANITY_VALUE, SOURCE_SANITY))
    return cases


def _is_issue(record: IssueRecord) -> bool:
    return (
        record.status in ISSUE_STATUSES
        or record.match_type == "MISMATCH"
        or "NO_REPLY" in record.match_type
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def build_issues_cases(catalog: TruthCatalog, records: list[IssueRecord]) -> list[CertifyCase]:
    """Rebuild cases for records that failed, timed out or were skipped.

    Records are deduplicated on ``(commandKey, setCode, value)``. Records
    that map to no truth row are logged and dropped.
    """
    cases: list[CertifyCase] = []
    seen: set[tuple[str, str, float | None]] = set()
    for record in records:
        if not _is_issue(record):
            continue
        set_code = normalize_code(record.set_code)
        value = record.value if record.value is not None and math.isfinite(record.value) else None
        dedupe_key = (record.command_key, set_code or "", value)
        if dedupe_key in seen:
            continue
        seen.add(dedupe_key)

        spec = catalog.numeric_specs.get(set_code or "")
        if spec is not None and value is not None:
            bounded = max(NUMERIC_MIN, min(NUMERIC_MAX, _round_half_up(value)))
            cases.append(build_generated_case(spec, bounded))
            continue
        if record.command_key and record.command_key in catalog.by_key:
            cases.append(catalog.truth_case(catalog.by_key[record.command_key]))
            continue
        row = catalog.first_row(set_code)
        if row is not None:
            cases.append(catalog.truth_case(row))
            continue
        logger.warning(
            'Could not map issue record to truth command: commandKey="%s" setCode="%s"',
            record.command_key, record.set_code or "",
        )
    return _power_last(cases)


# ─── RUN MODES ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SingleRun:
    selector: str
    value: int | None = None


@dataclass(frozen=True)
class SuiteRun:
    pass


@dataclass(frozen=True)
class SanityRun:
    pass


@dataclass(frozen=True)
class IssuesRun:
    path: str | Path | None = None
    records: tuple[IssueRecord, ...] = ()


RunMode = Union[SingleRun, SuiteRun, SanityRun, IssuesRun]


def mode_name(mode: RunMode) -> str:
    if isinstance(mode, SingleRun):
        return "single"
    if isinstance(mode, SuiteRun):
        return "suite"
    if isinstance(mode, SanityRun):
        return "sanity"
    if isinstance(mode, IssuesRun):
        return "issues"
    raise TypeError(f"Unknown run mode: {mode!r}")


def build_cases(mode: RunMode, catalog: TruthCatalog) -> list[CertifyCase]:
    """Build the ordered case list for a run mode."""
    if isinstance(mode, SingleRun):
        return [build_single_case(catalog, mode.selector, mode.value)]
    if isinstance(mode, SuiteRun):
        return build_suite_cases(catalog)
    if isinstance(mode, SanityRun):
        return build_sanity_cases(catalog)
    if isinstance(mode, IssuesRun):
        records = list(mode.records)
        if mode.path is not None:
            records.extend(load_issue_records(mode.path))
        return build_issues_cases(catalog, records)
    raise TypeError(f"Unknown run mode: {mode!r}")
