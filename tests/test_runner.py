"""Tests for reply classification and the sequential execution loop."""

import io
import logging
from dataclasses import replace
from unittest.mock import MagicMock, call

import pytest

from device_certify.engine.cases import SingleRun, SuiteRun, TruthCatalog, build_single_case
from device_certify.engine.options import CertifyOptions
from device_certify.engine.policy import SLEEP_WAKE_NOTE, resolve_policy
from device_certify.engine.runner import (
    POWER_EXCLUDED_REASON,
    SERIAL_ONLY_REASON,
    SPLIT_SCREEN_SKIP_REASON,
    classify,
    execute_case,
    infer_expected_value,
    run,
    run_cases,
    wait_for_enter,
)
from device_certify.errors import ConfigurationError
from device_certify.models.status import ResultStatus, TransportStatus
from device_certify.transport.udp_connection import SendResult

from frames import build_reply, build_request, row, truth_rows

MONITORING_PAYLOAD = bytes([0x01, 0x00, 0x01, 0x01, 0x01, 0x00, 0x05]) + bytes([0x11] * 6)
TEMPLATE_REPLY = build_reply("C2A0", b"\x05\x00")


@pytest.fixture
def catalog():
    rows = truth_rows() + [
        row("set-scene", "C2A1", build_request("C2A1", 1), "Set scene", "scene 1",
            reply=TEMPLATE_REPLY, reply_code="C2A0"),
        row("sleep", "C005", build_request("C005"), "Set sleep wake", "sleep", reply_code="C004"),
        row("hdmi", "C25B", build_request("C25B"), "Query HDMI presence", "hdmi", reply_code="C25B"),
    ]
    return TruthCatalog.from_rows(rows)


@pytest.fixture
def no_reply_connection():
    conn = MagicMock()
    conn.send_and_receive.return_value = SendResult(rx=None, latency_ms=None)
    return conn


def _classify(catalog, key, rx, profile="exview-aio"):
    case = catalog.truth_case(catalog.by_key[key])
    policy = resolve_policy(case, profile)
    return classify(case, policy, SendResult(rx=rx, latency_ms=None if rx is None else 7), profile)


# ─── CLASSIFICATION ───────────────────────────────────────────────────

def test_no_reply(catalog):
    """A query that times out is NO_REPLY with the timeout meaning."""
    record = _classify(catalog, "query-volume", None)
    assert record.status is ResultStatus.NO_REPLY
    assert record.match_type == "NO_REPLY"
    assert record.meaning == "No reply within timeout"
    assert record.transport_status is TransportStatus.NO_REPLY
    assert record.status_color == "RED"


def test_split_screen_source_query_is_skipped(catalog):
    """On exview-aio a C211 timeout is a firmware limitation, not a failure."""
    record = _classify(catalog, "query-source", None)
    assert record.status is ResultStatus.SKIPPED
    assert record.skip_reason == SPLIT_SCREEN_SKIP_REASON
    assert record.status_color == "GRAY"

    record = _classify(catalog, "query-source", None, profile="generic")
    assert record.status is ResultStatus.NO_REPLY


def test_parsed_range_pass(catalog):
    record = _classify(catalog, "query-volume", build_reply("C201", b"\x32"))
    assert record.status is ResultStatus.PASS
    assert record.match_type == "PARSED_RANGE"
    assert record.value == 50
    assert record.parsed == {"volume": 50}
    assert record.latency_ms == 7


def test_reply_code_mismatch_without_marker(catalog):
    """A reply with no 0xD0 marker fails the reply-code check."""
    record = _classify(catalog, "query-volume", build_reply(None, b"\x32"))
    assert record.status is ResultStatus.FAIL
    assert record.match_type == "REPLY_CODE_MISMATCH"
    assert record.meaning == "replyCode=unknown, expected=0xC201"


def test_reply_code_mismatch_wrong_code(catalog):
    record = _classify(catalog, "query-volume", build_reply("C21D", b"\x32"))
    assert record.match_type == "REPLY_CODE_MISMATCH"
    assert record.meaning.startswith("replyCode=0xC21D")


def test_payload_not_found(catalog):
    record = _classify(catalog, "query-volume", build_reply("C201", tail=b"\x11\x22"))
    assert record.status is ResultStatus.FAIL
    assert record.match_type == "PAYLOAD_NOT_FOUND"


def test_semantic_parse_fail(catalog):
    record = _classify(catalog, "query-volume", build_reply("C201", b"\x65"))
    assert record.status is ResultStatus.FAIL
    assert record.match_type == "SEMANTIC_PARSE_FAIL"
    assert "out of range" in record.note


def test_ambiguous_payload_is_noted(catalog):
    rx = build_reply("C201", tail=bytes([0x00, 0x04, 0x00, 0x00, 0x01, 0x00, 0x2A]))
    record = _classify(catalog, "query-volume", rx)
    assert record.status is ResultStatus.PASS
    assert record.value == 42
    assert any("Ambiguous payload marker" in n for n in record.notes)


def test_strict_exact_match(catalog):
    record = _classify(catalog, "set-scene", TEMPLATE_REPLY)
    assert record.status is ResultStatus.PASS
    assert record.match_type == "EXACT"


def test_strict_checksum_difference_still_passes(catalog):
    """Changing only the checksum byte never turns a pass into a fail."""
    rx = TEMPLATE_REPLY[:-1] + bytes([(TEMPLATE_REPLY[-1] + 1) & 0xFF])
    record = _classify(catalog, "set-scene", rx)
    assert record.status is ResultStatus.PASS
    assert record.match_type == "CHECKSUM_DIFF"


def test_strict_ack_success(catalog):
    record = _classify(catalog, "set-scene", build_reply("C2A0", b"\x01\x00"))
    assert record.status is ResultStatus.PASS
    assert record.match_type == "ACK_SUCCESS"
    assert record.meaning == "Success"


def test_strict_mismatch(catalog):
    record = _classify(catalog, "set-scene", build_reply("C2A0", b"\x07\x00"))
    assert record.status is ResultStatus.FAIL
    assert record.match_type == "MISMATCH"


def test_strict_without_template(catalog):
    record = _classify(catalog, "android", build_reply("C212", b"\x07\x00"))
    assert record.status is ResultStatus.PASS
    assert record.match_type == "RX_WITHOUT_TEMPLATE"


def test_screen_monitoring_accepts_other_reply_code(catalog):
    record = _classify(catalog, "monitoring", build_reply("C332", MONITORING_PAYLOAD))
    assert record.status is ResultStatus.PASS
    assert record.match_type == "STRUCTURE_ONLY"
    assert "Observed reply code: 0xC332" in record.notes
    assert record.parsed["numPorts"] == 1


def test_sleep_wake_without_reply_passes(catalog):
    record = _classify(catalog, "sleep", None)
    assert record.status is ResultStatus.PASS
    assert record.match_type == "EXPECTED_NO_REPLY"
    assert record.meaning == SLEEP_WAKE_NOTE


def test_sleep_wake_with_reply_passes(catalog):
    record = _classify(catalog, "sleep", build_reply("C004", b"\x80"))
    assert record.status is ResultStatus.PASS
    assert record.match_type == "EXPECTED_NO_REPLY_WITH_REPLY"
    assert record.parsed["state"] == "Awake"


def test_hdmi_presence_uses_tail_block(catalog):
    rx = build_reply("C25B", tail=bytes([0x00, 0x04, 0x00, 0x01, 0x00, 0x01, 0x00]))
    record = _classify(catalog, "hdmi", rx)
    assert record.status is ResultStatus.PASS
    assert record.parsed["activeInputs"] == ["HDMI1", "HDMI3"]


def test_self_check_warnings_reach_notes(catalog):
    """A generated request whose checksum disagrees is still sent, with a note."""
    case = build_single_case(catalog, "C203", 50)
    broken = case.tx_bytes[:-1] + b"\x00"
    case = replace(case, tx_bytes=broken)
    conn = MagicMock()
    conn.send_and_receive.return_value = SendResult(build_reply("C202", b"\x01\x00"), 3)
    record = execute_case(conn, case, CertifyOptions(), sleep=MagicMock())
    assert record.status is ResultStatus.PASS
    assert any("Self-check mismatch" in n for n in record.notes)
    conn.send_and_receive.assert_called_once_with(broken, 1200)


def test_infer_expected_value(catalog):
    assert infer_expected_value(build_single_case(catalog, "C21F", 70)) == 70
    assert infer_expected_value(catalog.truth_case(catalog.by_key["volume"])) == 30
    assert infer_expected_value(catalog.truth_case(catalog.by_key["query-volume"])) is None


# ─── CLOSED LOOP ──────────────────────────────────────────────────────

def test_closed_loop_readback_matches(catalog):
    case = build_single_case(catalog, "C203", 50)
    conn = MagicMock()
    conn.send_and_receive.side_effect = [
        SendResult(build_reply("C202", b"\x01\x00"), 3),
        SendResult(build_reply("C201", b"\x32"), 4),
    ]
    sleep = MagicMock()
    record = execute_case(conn, case, CertifyOptions(closed_loop=True), sleep)
    assert record.status is ResultStatus.PASS
    assert record.query_value == 50
    assert record.query_latency_ms == 4
    assert record.query_transport_status is TransportStatus.REPLY
    sleep.assert_called_once_with(0.4)


def test_closed_loop_readback_mismatch(catalog):
    case = build_single_case(catalog, "C203", 50)
    conn = MagicMock()
    conn.send_and_receive.side_effect = [
        SendResult(build_reply("C202", b"\x01\x00"), 3),
        SendResult(build_reply("C201", b"\x31"), 4),
    ]
    record = execute_case(conn, case, CertifyOptions(closed_loop=True), MagicMock())
    assert record.status is ResultStatus.FAIL
    assert record.match_type == "CLOSED_LOOP_MISMATCH"
    assert record.meaning == "volume readback=49, expected=50"


def test_closed_loop_query_timeout_is_a_note(catalog):
    case = build_single_case(catalog, "C203", 50)
    conn = MagicMock()
    conn.send_and_receive.side_effect = [
        SendResult(build_reply("C202", b"\x01\x00"), 3),
        SendResult(None, None),
    ]
    record = execute_case(conn, case, CertifyOptions(closed_loop=True), MagicMock())
    assert record.status is ResultStatus.PASS
    assert record.query_transport_status is TransportStatus.NO_REPLY
    assert any("got no reply" in n for n in record.notes)


def test_closed_loop_off_sends_once(catalog):
    case = build_single_case(catalog, "C203", 50)
    conn = MagicMock()
    conn.send_and_receive.return_value = SendResult(build_reply("C202", b"\x01\x00"), 3)
    execute_case(conn, case, CertifyOptions(), MagicMock())
    assert conn.send_and_receive.call_count == 1


# ─── EXECUTION LOOP ───────────────────────────────────────────────────

def test_excluded_code_is_skipped_without_sending(catalog, no_reply_connection):
    """A suite exclusion records SKIPPED with the configured reason; nothing is sent."""
    case = catalog.truth_case(catalog.by_key["monitoring"])
    records = run_cases([case], CertifyOptions(), no_reply_connection, "suite", {"C131": "disabled"},
                        sleep=MagicMock())
    assert records[0].status is ResultStatus.SKIPPED
    assert records[0].skip_reason == "disabled"
    no_reply_connection.send_and_receive.assert_not_called()
    no_reply_connection.close.assert_called_once()


def test_exclusions_only_apply_to_suite(catalog, no_reply_connection):
    case = catalog.truth_case(catalog.by_key["monitoring"])
    records = run_cases([case], CertifyOptions(), no_reply_connection, "single", {"C131": "disabled"},
                        sleep=MagicMock())
    assert records[0].status is ResultStatus.NO_REPLY


def test_power_and_serial_cases_are_skipped(catalog, no_reply_connection):
    cases = [catalog.truth_case(catalog.by_key[k]) for k in ("standby", "serial")]
    records = run_cases(cases, CertifyOptions(), no_reply_connection, "suite", sleep=MagicMock())
    assert [r.skip_reason for r in records] == [POWER_EXCLUDED_REASON, SERIAL_ONLY_REASON]
    no_reply_connection.send_and_receive.assert_not_called()


def test_skip_lines_only_for_exclusions(catalog, no_reply_connection, caplog):
    """Power and serial-only skips are silent; suite exclusions log a [SKIP] line."""
    caplog.set_level(logging.INFO, logger="device_certify.engine.runner")
    cases = [catalog.truth_case(catalog.by_key[k]) for k in ("standby", "serial", "monitoring")]
    run_cases(cases, CertifyOptions(), no_reply_connection, "suite", {"C131": "disabled"}, sleep=MagicMock())
    skip_lines = [r.getMessage() for r in caplog.records if r.getMessage().startswith("[SKIP]")]
    assert len(skip_lines) == 1
    assert 'reason="disabled"' in skip_lines[0]


def test_power_case_runs_in_single_mode(catalog, no_reply_connection):
    case = catalog.truth_case(catalog.by_key["standby"])
    records = run_cases([case], CertifyOptions(), no_reply_connection, "single", sleep=MagicMock())
    assert records[0].status is ResultStatus.NO_REPLY


def test_inter_case_delays(catalog, no_reply_connection):
    """Rate interval, raised for mode changes and set commands; none after a skip."""
    cases = [
        catalog.truth_case(catalog.by_key["query-volume"]),
        catalog.truth_case(catalog.by_key["android"]),
        build_single_case(catalog, "C203", 10),
        catalog.truth_case(catalog.by_key["query-volume"]),
        catalog.truth_case(catalog.by_key["serial"]),
        catalog.truth_case(catalog.by_key["query-volume"]),
    ]
    sleep = MagicMock()
    run_cases(cases, CertifyOptions(rate=10), no_reply_connection, "single", sleep=sleep)
    assert sleep.call_args_list == [call(0.1), call(1.2), call(0.4), call(0.1)]


def test_prompt_each_prompts_every_case(catalog, no_reply_connection):
    cases = [catalog.truth_case(catalog.by_key[k]) for k in ("query-volume", "android")]
    confirm = MagicMock()
    run_cases(cases, CertifyOptions(prompt_each=True), no_reply_connection, "single",
              confirm=confirm, sleep=MagicMock())
    assert confirm.call_count == 2


def test_prompt_each_with_power_only_prompts_disruptive(catalog, no_reply_connection):
    cases = [catalog.truth_case(catalog.by_key[k]) for k in ("query-volume", "standby")]
    confirm = MagicMock()
    options = CertifyOptions(prompt_each=True, include_power=True)
    run_cases(cases, options, no_reply_connection, "suite", confirm=confirm, sleep=MagicMock())
    confirm.assert_called_once()
    assert "standby" in confirm.call_args[0][0]


def test_connection_closed_when_send_fails(catalog):
    conn = MagicMock()
    conn.send_and_receive.side_effect = OSError("network down")
    case = catalog.truth_case(catalog.by_key["query-volume"])
    with pytest.raises(OSError):
        run_cases([case], CertifyOptions(), conn, "single", sleep=MagicMock())
    conn.close.assert_called_once()


def test_wait_for_enter_without_tty(monkeypatch):
    """Without a terminal the prompt continues at once."""
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    fake_input = MagicMock()
    monkeypatch.setattr("builtins.input", fake_input)
    wait_for_enter("Press Enter")
    fake_input.assert_not_called()


# ─── TOP-LEVEL RUN ────────────────────────────────────────────────────

def test_run_single(no_reply_connection):
    no_reply_connection.send_and_receive.return_value = SendResult(build_reply("C201", b"\x32"), 4)
    result = run(SingleRun("query-volume"), truth_rows(), CertifyOptions(profile="generic"),
                 connection=no_reply_connection, sleep=MagicMock())
    assert result.mode == "single"
    assert result.summary == {"pass": 1, "fail": 0, "noReply": 0, "skipped": 0}
    assert result.records[0].to_dict()["statusColor"] == "GREEN"
    no_reply_connection.open.assert_called_once()
    no_reply_connection.close.assert_called_once()


def test_run_configuration_error_before_open(no_reply_connection):
    with pytest.raises(ConfigurationError):
        run(SingleRun("C203"), truth_rows(), CertifyOptions(), connection=no_reply_connection)
    no_reply_connection.open.assert_not_called()


def test_run_suite_uses_given_exclusions(no_reply_connection):
    result = run(
        SuiteRun(),
        truth_rows(),
        CertifyOptions(rate=1000, settle_set_ms=0, settle_mode_ms=0),
        exclusions={"C131": "disabled"},
        connection=no_reply_connection,
        sleep=MagicMock(),
    )
    skipped = {r.command_key: r.skip_reason for r in result.records if r.status is ResultStatus.SKIPPED}
    assert skipped["monitoring"] == "disabled"
    assert skipped["standby"] == POWER_EXCLUDED_REASON
    assert len(result.records) == 8 + 2 * 101
