"""Truth dataset rows and the JSON input files that feed a run.

Three inputs are read:

- the truth dataset (``commands`` rows, or ``records`` from a prior capture),
- a per-profile suite exclusion file (``excludeFromSuite`` entries),
- an issues file (``records`` from an earlier run) for replay mode.

Malformed files raise :class:`~device_certify.errors.ConfigurationError`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import ConfigurationError
from ..protocol.framing import normalize_code

logger = logging.getLogger(__name__)

PROFILES_DIR = Path(__file__).resolve().parent.parent / "profiles"
PROFILE_EXCLUSION_FILES: dict[str, str | None] = {
    "exview-aio": "exview-aio.exclusions.json",
    "generic": None,
}
DEFAULT_PROFILE = "exview-aio"


@dataclass(frozen=True)
class TruthCommandRow:
    """One documented request/reply interaction."""

    command_key: str
    request_hex: str
    row_number: int = 0
    category: str = ""
    description: str = ""
    reply_hex: str | None = None
    set_command_code: str | None = None
    reply_command_code: str | None = None
    instruction: str = ""
    remark: str = ""
    transport: str | None = None
    excluded_reason: str | None = None

    @property
    def set_code(self) -> str | None:
        """Normalized set command code (``C203``), if any."""
        return normalize_code(self.set_command_code)

    @classmethod
    def from_dict(cls, data: dict[str, Any], row_number: int = 0) -> TruthCommandRow:
        if not isinstance(data, dict):
            raise ConfigurationError(f"Truth row {row_number} is not an object")
        key = _text(data.get("commandKey"))
        request = _text(data.get("requestHex"))
        if not key:
            raise ConfigurationError(f"Truth row {row_number} is missing commandKey")
        if not request:
            raise ConfigurationError(f"Truth row {key} is missing requestHex")
        raw_number = data.get("rowNumber")
        try:
            number = int(raw_number or row_number)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Truth row {key} has invalid rowNumber {raw_number!r}") from e
        return cls(
            command_key=key,
            request_hex=request,
            row_number=number,
            category=_text(data.get("category")),
            description=_text(data.get("description")),
            reply_hex=_text(data.get("replyHex")) or None,
            set_command_code=_text(data.get("setCommandCode")) or None,
            reply_command_code=_text(data.get("replyCommandCode")) or None,
            instruction=_text(data.get("instruction")),
            remark=_text(data.get("remark")),
            transport=_text(data.get("transport")) or None,
            excluded_reason=_text(data.get("excludedReason")) or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "rowNumber": self.row_number,
            "commandKey": self.command_key,
            "category": self.category,
            "description": self.description,
            "requestHex": self.request_hex,
            "replyHex": self.reply_hex,
            "setCommandCode": self.set_command_code,
            "replyCommandCode": self.reply_command_code,
            "instruction": self.instruction,
            "remark": self.remark,
            "transport": self.transport,
            "excludedReason": self.excluded_reason,
        }


@dataclass(frozen=True)
class IssueRecord:
    """A result record from an earlier run, as read back for replay."""

    command_key: str = ""
    set_code: str | None = None
    value: float | None = None
    status: str = ""
    match_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueRecord:
        raw_value = data.get("value")
        try:
            value = None if raw_value is None else float(raw_value)
        except (TypeError, ValueError):
            value = None
        return cls(
            command_key=_text(data.get("commandKey")),
            set_code=_text(data.get("setCode") or data.get("command")) or None,
            value=value,
            status=_text(data.get("status")).upper(),
            match_type=_text(data.get("matchType")).upper(),
        )


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _read_json(path: str | Path, what: str) -> Any:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"{what} not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Invalid {what.lower()} {path}: {e}") from e


def rows_from_records(records: list[dict[str, Any]]) -> list[TruthCommandRow]:
    """Convert captured result records into truth rows.

    Records without a request are dropped. The command key falls back to
    ``<command>:<variant>``, then ``row-<n>``.
    """
    rows: list[TruthCommandRow] = []
    for record in records:
        if not isinstance(record, dict) or not _text(record.get("txHex")):
            continue
        index = len(rows) + 1
        command = _text(record.get("command"))
        variant = _text(record.get("variant"))
        fallback = f"{command}:{variant}" if command and variant else command or f"row-{index}"
        rows.append(
            TruthCommandRow(
                row_number=index,
                command_key=_text(record.get("commandKey")) or fallback,
                category=_text(record.get("category")),
                description=variant,
                request_hex=_text(record.get("txHex")),
                reply_hex=_text(record.get("expectedHex")) or _text(record.get("rxHex")) or None,
                set_command_code=_text(record.get("setCode")) or command or None,
                reply_command_code=_text(record.get("replyCode")) or None,
                remark=_text(record.get("meaning")),
                transport=_text(record.get("transportStatus")) or None,
            )
        )
    return rows


def parse_truth(payload: Any) -> list[TruthCommandRow]:
    """Build truth rows from a decoded truth document."""
    if not isinstance(payload, dict):
        raise ConfigurationError("Invalid truth file: top level must be an object")
    if isinstance(payload.get("commands"), list):
        rows = [
            TruthCommandRow.from_dict(item, row_number=i + 1)
            for i, item in enumerate(payload["commands"])
        ]
    elif isinstance(payload.get("records"), list):
        rows = rows_from_records(payload["records"])
    else:
        raise ConfigurationError("Invalid truth file: commands array missing")

    seen: set[str] = set()
    for row in rows:
        if row.command_key in seen:
            raise ConfigurationError(f"Duplicate commandKey in truth file: {row.command_key}")
        seen.add(row.command_key)
    return rows


def load_truth(path: str | Path) -> list[TruthCommandRow]:
    """Load the truth dataset from a JSON file."""
    rows = parse_truth(_read_json(path, "Truth file"))
    logger.info("Loaded %d truth rows from %s", len(rows), path)
    return rows


def parse_suite_exclusions(payload: Any) -> dict[str, str]:
    """Map normalized code -> reason. Entries without a code or reason are ignored."""
    if not isinstance(payload, dict) or not isinstance(payload.get("excludeFromSuite"), list):
        raise ConfigurationError("Invalid exclusion file: excludeFromSuite array missing")
    exclusions: dict[str, str] = {}
    for item in payload["excludeFromSuite"]:
        if not isinstance(item, dict):
            raise ConfigurationError(f"Invalid exclusion entry: {item!r}")
        code = normalize_code(_text(item.get("code")))
        reason = _text(item.get("reason"))
        if not code or not reason:
            continue
        exclusions[code] = reason
    return exclusions


def load_suite_exclusions(path: str | Path) -> dict[str, str]:
    return parse_suite_exclusions(_read_json(path, "Exclusion file"))


def profile_exclusions(profile: str) -> dict[str, str]:
    """Suite exclusions bundled for a device profile."""
    if profile not in PROFILE_EXCLUSION_FILES:
        raise ConfigurationError(
            f"Invalid profile: {profile} (supported: {', '.join(PROFILE_EXCLUSION_FILES)})"
        )
    filename = PROFILE_EXCLUSION_FILES[profile]
    if filename is None:
        return {}
    path = PROFILES_DIR / filename
    if not path.exists():
        return {}
    return load_suite_exclusions(path)


def parse_issue_records(payload: Any) -> list[IssueRecord]:
    if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
        raise ConfigurationError("Invalid issues file (records array missing)")
    return [IssueRecord.from_dict(item) for item in payload["records"] if isinstance(item, dict)]


def load_issue_records(path: str | Path) -> list[IssueRecord]:
    return parse_issue_records(_read_json(path, "Issues file"))
