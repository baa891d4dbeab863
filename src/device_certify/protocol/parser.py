"""Semantic parsing of decoded reply payloads.

Every parser takes the payload bytes selected by
:func:`~device_certify.protocol.framing.extract_payload` and returns a
:class:`ParseResult`. Parsers never raise on malformed input; a payload of
the wrong shape produces a result with ``ok=False`` and a descriptive
``meaning``.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping

from .commands import Command
from .framing import locate_tail_block

VIDEO_SOURCE_ENUM: Mapping[int, str] = MappingProxyType({
    0: "Android",
    1: "Windows",
    2: "HDMI1",
    3: "HDMI2",
    4: "HDMI3",
    6: "HDMI4",
})

SCENE_MODE_ENUM: Mapping[int, str] = MappingProxyType({
    0: "Meeting",
    1: "Standard",
    2: "Soft",
    3: "Custom",
    5: "Cinema",
})

DISPLAY_MODE_ENUM: Mapping[int, str] = MappingProxyType({
    1: "4:3",
    2: "16:9",
    3: "Full",
    4: "Original",
    7: "1:1",
})

COLOR_TEMP_ENUM: Mapping[int, str] = MappingProxyType({
    1: "Standard",
    2: "Warm",
    3: "Cool",
    4: "User",
})

TRUE_STANDBY_ENUM: Mapping[int, str] = MappingProxyType({
    0: "TrueStandby",
    1: "NormalOperation",
})

HDMI_PORTS = ("HDMI1", "HDMI2", "HDMI3", "HDMI4")

SLEEP_WAKE_AWAKE = 0x80
SLEEP_WAKE_BLACKOUT = 0x00

MONITORING_STATUS_CODES = (0x0001, 0x0002)
MONITORING_MAX_PORTS = 64
MONITORING_MAX_CABINETS = 4096
MONITORING_HEADER_SIZE = 6
MONITORING_CABINET_SIZE = 6


@dataclass
class ParseResult:
    """Outcome of a semantic parse."""

    ok: bool
    parsed: dict[str, Any] | None
    meaning: str
    value: int | None = None
    note: str | None = None

    def __repr__(self) -> str:
        return f"ParseResult(ok={self.ok}, meaning={self.meaning!r})"


def _length_mismatch(label: str, data: bytes, expected: int) -> ParseResult:
    return ParseResult(
        ok=False,
        parsed={"raw": list(data)},
        meaning=f"{label} payload length={len(data)}, expected={expected}",
    )


def parse_range(label: str, data: bytes, minimum: int, maximum: int) -> ParseResult:
    """Single byte that must fall within ``[minimum, maximum]``."""
    if len(data) < 1:
        return ParseResult(ok=False, parsed=None, meaning=f"{label}: missing payload")
    value = data[0]
    ok = minimum <= value <= maximum
    return ParseResult(
        ok=ok,
        parsed={label: value},
        meaning=f"{label}={value}",
        value=value,
        note=None if ok else f"{label} out of range ({value}, expected {minimum}-{maximum})",
    )


def parse_enum(label: str, data: bytes, table: Mapping[int, str]) -> ParseResult:
    """Single byte mapped through ``table``.

    A leading zero byte is treated as a placeholder when a non-zero byte
    follows it.
    """
    if len(data) < 1:
        return ParseResult(ok=False, parsed=None, meaning=f"{label}: missing payload")
    value = data[0]
    if len(data) >= 2 and data[0] == 0x00 and data[1] != 0x00:
        value = data[1]
    text = table.get(value)
    if text is None:
        return ParseResult(
            ok=False,
            parsed={label: value},
            meaning=f"{label}=unknown({value})",
            value=value,
            note=f"{label} value is outside enum set",
        )
    return ParseResult(
        ok=True,
        parsed={label: value, f"{label}Text": text},
        meaning=f"{label}={text}({value})",
        value=value,
    )


def parse_video_combo(data: bytes) -> ParseResult:
    """Seven-byte combined video status.

    Layout: brightness, colour temperature, display mode, video source,
    volume, contrast, scene mode.
    """
    if len(data) != 7:
        return _length_mismatch("videoCombo", data, 7)
    brightness, color_temp, display_mode, video_source, volume, contrast, scene_mode = data

    errors: list[str] = []
    if brightness > 100:
        errors.append("brightness out of range")
    if color_temp not in COLOR_TEMP_ENUM:
        errors.append("colorTemp invalid")
    if display_mode not in DISPLAY_MODE_ENUM:
        errors.append("displayMode invalid")
    if video_source not in VIDEO_SOURCE_ENUM:
        errors.append("videoSource invalid")
    if volume > 100:
        errors.append("volume out of range")
    if contrast > 100:
        errors.append("contrast out of range")
    if scene_mode not in SCENE_MODE_ENUM:
        errors.append("sceneMode invalid")

    parsed = {
        "brightness": brightness,
        "colorTemp": color_temp,
        "colorTempText": COLOR_TEMP_ENUM.get(color_temp, "unknown"),
        "displayMode": display_mode,
        "displayModeText": DISPLAY_MODE_ENUM.get(display_mode, "unknown"),
        "videoSource": video_source,
        "videoSourceText": VIDEO_SOURCE_ENUM.get(video_source, "unknown"),
        "volume": volume,
        "contrast": contrast,
        "sceneMode": scene_mode,
        "sceneModeText": SCENE_MODE_ENUM.get(scene_mode, "unknown"),
    }
    return ParseResult(
        ok=not errors,
        parsed=parsed,
        meaning=(
            f"brightness={brightness} source={parsed['videoSourceText']} "
            f"volume={volume} contrast={contrast}"
        ),
        note="; ".join(errors) if errors else None,
    )


def parse_hdmi_presence(data: bytes) -> ParseResult:
    """Four 0/1 flags, one per HDMI input."""
    if len(data) != 4:
        return _length_mismatch("hdmiPresence", data, 4)
    flags = list(data)
    if any(flag not in (0, 1) for flag in flags):
        return ParseResult(
            ok=False,
            parsed={"raw": flags},
            meaning=f"hdmiPresence raw={','.join(str(f) for f in flags)}",
            note="Expected each HDMI flag to be 0 or 1",
        )
    parsed: dict[str, Any] = {f"hdmi{i + 1}": flag for i, flag in enumerate(flags)}
    parsed["payloadHex"] = data.hex(" ").upper()
    parsed["activeInputs"] = [port for port, flag in zip(HDMI_PORTS, flags) if flag == 1]
    meaning = ", ".join(
        f"{port}={'signal' if flag else 'no-signal'}" for port, flag in zip(HDMI_PORTS, flags)
    )
    return ParseResult(ok=True, parsed=parsed, meaning=meaning)


def parse_hdmi_presence_frame(frame: bytes) -> ParseResult:
    """HDMI presence parsed straight from a reply frame.

    This reply carries a 16-bit length prefix, so it is located with
    :func:`~device_certify.protocol.framing.locate_tail_block` rather than
    the generic payload marker; ambiguity between candidates is accepted.
    """
    block = locate_tail_block(frame, preferred_length=4)
    if block is None:
        return ParseResult(
            ok=False,
            parsed={"raw": frame.hex(" ").upper()},
            meaning="hdmiPresence: tail length marker not found",
        )
    if block.data_length != 4:
        return ParseResult(
            ok=False,
            parsed={"tailLength": block.data_length, "payload": list(block.data)},
            meaning=f"hdmiPresence payload length={block.data_length}, expected=4",
        )
    return parse_hdmi_presence(block.data)


def parse_screen_monitoring(data: bytes) -> ParseResult:
    """Screen monitoring structure.

    Layout: status (u16 LE), data source, port count, cabinet count
    (u16 LE), then one byte per port followed by 6 bytes per cabinet.
    Plausibility depends on the status word and the counts only; a payload
    shorter than the declared structure is noted but not failed.
    """
    if len(data) < MONITORING_HEADER_SIZE:
        return ParseResult(
            ok=False,
            parsed=None,
            meaning=f"screenMonitoring: payload too short ({len(data)})",
        )
    status = int.from_bytes(data[0:2], "little")
    data_source = data[2]
    num_ports = data[3]
    total_cabinets = int.from_bytes(data[4:6], "little")
    required_length = MONITORING_HEADER_SIZE + num_ports + total_cabinets * MONITORING_CABINET_SIZE

    ok_status = status in MONITORING_STATUS_CODES
    plausible_counts = num_ports <= MONITORING_MAX_PORTS and total_cabinets <= MONITORING_MAX_CABINETS
    ok_length = len(data) >= required_length

    notes: list[str] = []
    if not ok_status:
        notes.append(f"status not in {{0x0001,0x0002}}: 0x{status:04X}")
    if not plausible_counts:
        notes.append(f"implausible counts: ports={num_ports}, cabinets={total_cabinets}")
    if not ok_length:
        notes.append(f"payload shorter than declared structure: {len(data)} < {required_length}")

    parsed = {
        "status": status,
        "dataSource": data_source,
        "numPorts": num_ports,
        "totalCabinets": total_cabinets,
        "requiredLength": required_length,
        "payloadLength": len(data),
        "perPortCounts": list(data[MONITORING_HEADER_SIZE : MONITORING_HEADER_SIZE + num_ports]),
    }
    return ParseResult(
        ok=ok_status and plausible_counts,
        parsed=parsed,
        meaning=f"status=0x{status:04X} ports={num_ports} totalCabinets={total_cabinets}",
        note="; ".join(notes) if notes else None,
    )


def parse_uptime(data: bytes) -> ParseResult:
    """Uptime in minutes, 32-bit little-endian."""
    if len(data) != 4:
        return _length_mismatch("uptime", data, 4)
    minutes = int.from_bytes(data, "little")
    return ParseResult(
        ok=True,
        parsed={"minutes": minutes},
        meaning=f"uptimeMinutes={minutes}",
        value=minutes,
    )


def parse_sleep_wake(data: bytes) -> ParseResult:
    if len(data) != 1:
        return ParseResult(ok=False, parsed=None, meaning="sleepWake: missing payload")
    flag = data[0]
    if flag == SLEEP_WAKE_AWAKE:
        state = "Awake"
    elif flag == SLEEP_WAKE_BLACKOUT:
        state = "Blackout"
    else:
        return ParseResult(
            ok=False,
            parsed={"sleepWakeFlag": flag},
            meaning=f"sleepWake=unknown(0x{flag:02X})",
            value=flag,
            note="Expected 0x80 (awake) or 0x00 (blackout)",
        )
    return ParseResult(
        ok=True,
        parsed={"sleepWakeFlag": flag, "state": state},
        meaning=f"sleepWake={state}(0x{flag:02X})",
        value=flag,
    )


def _single_byte(label: str, parse: Callable[[bytes], ParseResult]) -> Callable[[bytes], ParseResult]:
    def parser(data: bytes) -> ParseResult:
        if len(data) != 1:
            return _length_mismatch(label, data, 1)
        return parse(data)

    return parser


SEMANTIC_PARSERS: Mapping[str, Callable[[bytes], ParseResult]] = MappingProxyType({
    Command.QUERY_VOLUME.value: _single_byte("volume", lambda d: parse_range("volume", d, 0, 100)),
    Command.QUERY_CONTRAST.value: _single_byte("contrast", lambda d: parse_range("contrast", d, 0, 100)),
    Command.QUERY_RED_GAIN.value: _single_byte("redGain", lambda d: parse_range("redGain", d, 0, 100)),
    Command.QUERY_VIDEO_SOURCE.value: _single_byte(
        "videoSource", lambda d: parse_enum("videoSource", d, VIDEO_SOURCE_ENUM)
    ),
    Command.QUERY_SCENE_MODE.value: _single_byte(
        "sceneMode", lambda d: parse_enum("sceneMode", d, SCENE_MODE_ENUM)
    ),
    Command.QUERY_DISPLAY_MODE.value: lambda d: parse_enum("displayMode", d, DISPLAY_MODE_ENUM),
    Command.TRUE_STANDBY.value: lambda d: parse_enum("trueStandby", d, TRUE_STANDBY_ENUM),
    Command.SLEEP_WAKE.value: parse_sleep_wake,
    Command.HDMI_PRESENCE.value: parse_hdmi_presence,
    Command.VIDEO_COMBO.value: parse_video_combo,
    Command.SCREEN_MONITORING.value: parse_screen_monitoring,
    Command.UPTIME.value: parse_uptime,
})


def parse_semantic(parser_code: str, data: bytes) -> ParseResult:
    """Dispatch ``data`` to the parser registered under ``parser_code``."""
    parser = SEMANTIC_PARSERS.get(parser_code)
    if parser is None:
        return ParseResult(ok=False, parsed=None, meaning=f"No semantic parser for {parser_code}")
    return parser(bytes(data))
