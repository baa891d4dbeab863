"""Per-command validation policy.

Policies are looked up by command code in a fixed table. Codes without an
entry are validated byte-for-byte against their truth template.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from ..models.case import CertifyCase
from ..models.status import ValidationMode
from ..protocol.commands import Command
from ..protocol.framing import normalize_code

SLEEP_WAKE_NOTE = "Known device quirk around standby/wake transitions; no reply can be expected."


@dataclass(frozen=True)
class CommandPolicy:
    """Static table entry."""

    validation_mode: ValidationMode
    parser_code: str | None = None
    note: str | None = None
    accept_any_reply_code: bool = False
    allow_no_reply_quirk: bool = False
    allowed_reply_codes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResolvedPolicy:
    validation_mode: ValidationMode
    parser_code: str | None = None
    note: str | None = None
    accept_any_reply_code: bool = False
    allow_no_reply_quirk: bool = False
    allowed_reply_codes: tuple[str, ...] = field(default_factory=tuple)


def _parsed(parser: Command) -> CommandPolicy:
    return CommandPolicy(ValidationMode.PARSED_RANGE, parser_code=parser.value)


COMMAND_POLICY_BY_CODE: Mapping[str, CommandPolicy] = MappingProxyType({
    Command.QUERY_VOLUME.value: _parsed(Command.QUERY_VOLUME),
    Command.QUERY_BRIGHTNESS.value: _parsed(Command.QUERY_VOLUME),
    Command.QUERY_SATURATION.value: _parsed(Command.QUERY_VOLUME),
    Command.QUERY_HUE.value: _parsed(Command.QUERY_VOLUME),
    Command.QUERY_CONTRAST.value: _parsed(Command.QUERY_CONTRAST),
    Command.QUERY_RED_GAIN.value: _parsed(Command.QUERY_RED_GAIN),
    Command.QUERY_GREEN_GAIN.value: _parsed(Command.QUERY_RED_GAIN),
    Command.QUERY_BLUE_GAIN.value: _parsed(Command.QUERY_RED_GAIN),
    Command.QUERY_VIDEO_SOURCE.value: _parsed(Command.QUERY_VIDEO_SOURCE),
    Command.QUERY_SCENE_MODE.value: _parsed(Command.QUERY_SCENE_MODE),
    Command.HDMI_PRESENCE.value: _parsed(Command.HDMI_PRESENCE),
    Command.VIDEO_COMBO.value: _parsed(Command.VIDEO_COMBO),
    Command.UPTIME.value: _parsed(Command.UPTIME),
    Command.SCREEN_MONITORING.value: CommandPolicy(
        ValidationMode.STRUCTURE_ONLY,
        parser_code=Command.SCREEN_MONITORING.value,
        accept_any_reply_code=True,
        allowed_reply_codes=(Command.SCREEN_MONITORING_REPLY.value,),
    ),
    Command.SLEEP_WAKE.value: CommandPolicy(
        ValidationMode.EXPECTED_NO_REPLY,
        parser_code=Command.SLEEP_WAKE.value,
        allow_no_reply_quirk=True,
        note=SLEEP_WAKE_NOTE,
    ),
})

QUERY_SCENE_MODE_TEXT = "query scene mode"


def resolve_code_policy(code: str | None, text: str = "") -> ResolvedPolicy:
    """Resolve the policy for a command code.

    ``text`` is the case's category and description; it upgrades
    unregistered scene-mode queries to the scene-mode parser.
    """
    base = COMMAND_POLICY_BY_CODE.get(normalize_code(code) or "")
    if base is None:
        if QUERY_SCENE_MODE_TEXT in text.lower():
            return ResolvedPolicy(
                validation_mode=ValidationMode.PARSED_RANGE,
                parser_code=Command.QUERY_SCENE_MODE.value,
            )
        return ResolvedPolicy(validation_mode=ValidationMode.STRICT_EXACT)
    return ResolvedPolicy(
        validation_mode=base.validation_mode,
        parser_code=base.parser_code,
        note=base.note,
        accept_any_reply_code=base.accept_any_reply_code,
        allow_no_reply_quirk=base.allow_no_reply_quirk,
        allowed_reply_codes=base.allowed_reply_codes,
    )


def resolve_policy(case: CertifyCase, profile: str = "exview-aio") -> ResolvedPolicy:
    """Resolve the validation policy for a case.

    The profile does not alter the table; profile-specific outcomes are
    applied by the runner when a reply is missing.
    """
    return resolve_code_policy(case.set_code, f"{case.category} {case.description}")


def is_reply_code_accepted(
    expected: str | None,
    actual: str | None,
    allowed: tuple[str, ...] = (),
) -> bool:
    """True when ``actual`` is the expected reply code or one of ``allowed``.

    With nothing to compare against, any reply code is accepted.
    """
    accepted = {c for c in (normalize_code(x) for x in (expected, *allowed)) if c}
    if not accepted:
        return True
    if not actual:
        return False
    return normalize_code(actual) in accepted
