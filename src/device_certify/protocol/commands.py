"""Command code constants and numeric request synthesis.

Each command is identified by a 16-bit code rendered as four hex digits
(``C203``). Set commands mutate device state; most have a paired query code
that reads the value back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from ..errors import ConfigurationError
from ..utils.checksum import compute_checksum
from .framing import normalize_code, to_code


class Command(str, Enum):
    """Command codes the engine treats specially."""

    STANDBY = "C003"
    SLEEP_WAKE = "C005"
    POWER_OFF = "C007"
    RESTART = "C009"
    TRUE_STANDBY = "C020"
    SCREEN_MONITORING = "C131"
    SCREEN_MONITORING_REPLY = "C332"
    QUERY_VOLUME = "C201"
    SET_VOLUME = "C203"
    QUERY_DISPLAY_MODE = "C20D"
    SET_DISPLAY_MODE = "C20F"
    QUERY_VIDEO_SOURCE = "C211"
    SET_VIDEO_SOURCE = "C213"
    QUERY_CONTRAST = "C215"
    SET_CONTRAST = "C217"
    QUERY_BRIGHTNESS = "C21D"
    SET_BRIGHTNESS = "C21F"
    QUERY_RED_GAIN = "C221"
    SET_RED_GAIN = "C223"
    QUERY_GREEN_GAIN = "C225"
    SET_GREEN_GAIN = "C227"
    QUERY_BLUE_GAIN = "C229"
    SET_BLUE_GAIN = "C22B"
    VIDEO_COMBO = "C241"
    QUERY_SCENE_MODE = "C243"
    QUERY_SATURATION = "C257"
    SET_SATURATION = "C259"
    HDMI_PRESENCE = "C25B"
    SET_HUE = "C262"
    QUERY_HUE = "C264"
    UPTIME = "C33D"


# Set codes whose value byte can be swept 0..100
NUMERIC_SET_CODES: tuple[str, ...] = (
    Command.SET_VOLUME.value,
    Command.SET_BRIGHTNESS.value,
    Command.SET_CONTRAST.value,
    Command.SET_RED_GAIN.value,
    Command.SET_GREEN_GAIN.value,
    Command.SET_BLUE_GAIN.value,
    Command.SET_SATURATION.value,
    Command.SET_HUE.value,
)

NUMERIC_MIN = 0
NUMERIC_MAX = 100
SUITE_VALUES = range(NUMERIC_MIN, NUMERIC_MAX + 1)


@dataclass(frozen=True)
class NumericIndex:
    """Byte offsets of the adjustable value and the checksum in a request."""

    value_index: int
    checksum_index: int


NUMERIC_VALUE_INDEX: Mapping[str, NumericIndex] = MappingProxyType(
    {code: NumericIndex(value_index=38, checksum_index=39) for code in NUMERIC_SET_CODES}
)

# Checksum byte = (base + value) & 0xFF for these codes
FORMULA_CHECKSUM_BASE: Mapping[str, int] = MappingProxyType({
    Command.SET_VOLUME.value: 0x5B,
    Command.SET_BRIGHTNESS.value: 0x77,
})

CLOSED_LOOP_QUERY_BY_SET: Mapping[str, str] = MappingProxyType({
    Command.SET_VOLUME.value: Command.QUERY_VOLUME.value,
    Command.SET_BRIGHTNESS.value: Command.QUERY_BRIGHTNESS.value,
    Command.SET_CONTRAST.value: Command.QUERY_CONTRAST.value,
    Command.SET_RED_GAIN.value: Command.QUERY_RED_GAIN.value,
    Command.SET_GREEN_GAIN.value: Command.QUERY_GREEN_GAIN.value,
    Command.SET_BLUE_GAIN.value: Command.QUERY_BLUE_GAIN.value,
    Command.SET_SATURATION.value: Command.QUERY_SATURATION.value,
    Command.SET_HUE.value: Command.QUERY_HUE.value,
    Command.SET_DISPLAY_MODE.value: Command.QUERY_DISPLAY_MODE.value,
})

# Display-mode set requests carry the selected mode at this offset
DISPLAY_MODE_VALUE_INDEX = 38

POWER_SET_CODES: frozenset[str] = frozenset({
    Command.STANDBY.value,
    Command.POWER_OFF.value,
    Command.RESTART.value,
})

VALUE_LABELS: Mapping[str, str] = MappingProxyType({
    Command.SET_VOLUME.value: "volume",
    Command.SET_BRIGHTNESS.value: "brightness",
    Command.SET_CONTRAST.value: "contrast",
    Command.SET_RED_GAIN.value: "redGain",
    Command.SET_GREEN_GAIN.value: "greenGain",
    Command.SET_BLUE_GAIN.value: "blueGain",
    Command.SET_SATURATION.value: "saturation",
    Command.SET_HUE.value: "hue",
})


def is_numeric_code(code: str | None) -> bool:
    return normalize_code(code) in NUMERIC_VALUE_INDEX


def value_label(code: str | None) -> str:
    """Human-readable name of the value a numeric set code adjusts."""
    return VALUE_LABELS.get(normalize_code(code) or "", "value")


def formula_checksum(code: str | None, value: int) -> int | None:
    """Checksum predicted by the per-code linear formula, if one exists."""
    base = FORMULA_CHECKSUM_BASE.get(normalize_code(code) or "")
    if base is None:
        return None
    return (base + value) & 0xFF


def synthesize_numeric_request(
    template: bytes,
    code: str,
    value: int,
    value_index: int | None = None,
    checksum_index: int | None = None,
) -> bytes:
    """Patch ``value`` and a fresh checksum into a baseline request.

    Args:
        template: Baseline request bytes from the truth dataset.
        code: Numeric set code (e.g. ``C203``).
        value: Target value 0-100.
        value_index: Offset of the value byte; defaults to the code's mapping.
        checksum_index: Offset of the checksum byte; defaults to the mapping.

    Raises:
        ConfigurationError: If the value or offsets are invalid.
    """
    normalized = normalize_code(code)
    if not NUMERIC_MIN <= value <= NUMERIC_MAX:
        raise ConfigurationError(
            f"Value for {to_code(code)} must be {NUMERIC_MIN}-{NUMERIC_MAX}, got {value}"
        )
    if value_index is None or checksum_index is None:
        mapping = NUMERIC_VALUE_INDEX.get(normalized or "")
        if mapping is None:
            raise ConfigurationError(f"Missing manual numeric index for {to_code(code)}")
        value_index = mapping.value_index if value_index is None else value_index
        checksum_index = mapping.checksum_index if checksum_index is None else checksum_index
    if value_index >= len(template) or checksum_index >= len(template):
        raise ConfigurationError(
            f"Manual index out of bounds for {to_code(code)}: request length={len(template)}"
        )
    if checksum_index != len(template) - 1:
        raise ConfigurationError(f"Manual checksum index is not last byte for {to_code(code)}")

    request = bytearray(template)
    request[value_index] = value & 0xFF
    formula = formula_checksum(normalized, value)
    request[checksum_index] = formula if formula is not None else compute_checksum(request)
    return bytes(request)


@dataclass
class ChecksumCheck:
    """Independent verification of a synthesized request's checksum."""

    computed: int
    actual: int
    formula: int | None = None
    warnings: list[str] = field(default_factory=list)


def verify_synthesized_checksum(request: bytes, code: str | None, value: int) -> ChecksumCheck:
    """Recompute the generic checksum and formula for a synthesized request.

    Mismatches are returned as warning strings, never raised.
    """
    computed = compute_checksum(request)
    actual = request[-1]
    check = ChecksumCheck(computed=computed, actual=actual)
    if computed != actual:
        check.warnings.append(
            f"Self-check mismatch: checksum(last=0x{actual:02X}, computed=0x{computed:02X})"
        )
    formula = formula_checksum(code, value)
    if formula is not None:
        check.formula = formula
        if formula != actual:
            check.warnings.append(
                f"Formula mismatch for {to_code(code)}: formula=0x{formula:02X} actual=0x{actual:02X}"
            )
    return check
