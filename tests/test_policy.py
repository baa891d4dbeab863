"""Tests for validation policy resolution."""

from device_certify.engine.cases import TruthCatalog
from device_certify.engine.policy import (
    COMMAND_POLICY_BY_CODE,
    SLEEP_WAKE_NOTE,
    is_reply_code_accepted,
    resolve_code_policy,
    resolve_policy,
)
from device_certify.models.status import ValidationMode

from frames import build_request, row


def test_every_table_entry_resolves_to_itself():
    """Resolving any registered code returns that entry's mode, parser and flags."""
    for code, entry in COMMAND_POLICY_BY_CODE.items():
        resolved = resolve_code_policy(code)
        assert resolved.validation_mode is entry.validation_mode
        assert resolved.parser_code == entry.parser_code
        assert resolved.accept_any_reply_code == entry.accept_any_reply_code
        assert resolved.allow_no_reply_quirk == entry.allow_no_reply_quirk
        assert resolved.allowed_reply_codes == entry.allowed_reply_codes


def test_query_codes_share_parsers():
    """Brightness, saturation and hue queries reuse the volume range parser."""
    for code in ("C21D", "C257", "C264"):
        assert resolve_code_policy(code).parser_code == "C201"
    for code in ("C225", "C229"):
        assert resolve_code_policy(code).parser_code == "C221"


def test_screen_monitoring_policy():
    policy = resolve_code_policy("0xC131")
    assert policy.validation_mode is ValidationMode.STRUCTURE_ONLY
    assert policy.accept_any_reply_code
    assert policy.allowed_reply_codes == ("C332",)


def test_sleep_wake_policy():
    policy = resolve_code_policy("C005")
    assert policy.validation_mode is ValidationMode.EXPECTED_NO_REPLY
    assert policy.allow_no_reply_quirk
    assert policy.note == SLEEP_WAKE_NOTE


def test_unregistered_code_is_strict_without_parser():
    policy = resolve_code_policy("C203")
    assert policy.validation_mode is ValidationMode.STRICT_EXACT
    assert policy.parser_code is None


def test_scene_mode_text_upgrades_unregistered_code():
    """An unregistered row described as a scene-mode query uses the C243 parser."""
    policy = resolve_code_policy("C2F0", "Query Scene Mode current")
    assert policy.validation_mode is ValidationMode.PARSED_RANGE
    assert policy.parser_code == "C243"


def test_resolve_policy_for_case():
    catalog = TruthCatalog.from_rows([
        row("q-vol", "C201", build_request("C201"), "Query volume", "volume"),
    ])
    case = catalog.truth_case(catalog.by_key["q-vol"])
    policy = resolve_policy(case, "generic")
    assert policy.validation_mode is ValidationMode.PARSED_RANGE
    assert policy.parser_code == "C201"


def test_reply_code_acceptance():
    assert is_reply_code_accepted("0xC201", "C201")
    assert not is_reply_code_accepted("0xC201", "C202")
    assert not is_reply_code_accepted("0xC201", None)
    assert is_reply_code_accepted("C131", "C332", ("C332",))
    assert is_reply_code_accepted(None, None)
    assert is_reply_code_accepted(None, "ABCD")
