"""Tests for result records, run options and report files."""

import json
from datetime import datetime, timezone

import pytest

from device_certify.engine.cases import TruthCatalog
from device_certify.engine.options import CertifyOptions, parse_target
from device_certify.errors import ConfigurationError
from device_certify.models.record import CertifyRecord, summarize
from device_certify.models.report import build_issues_document, file_stamp, write_run_report
from device_certify.models.status import ResultStatus

from frames import truth_rows


@pytest.fixture
def records():
    catalog = TruthCatalog.from_rows(truth_rows())
    passed = CertifyRecord.for_case(catalog.truth_case(catalog.by_key["query-volume"]), rx=b"\x55")
    passed.set_outcome(ResultStatus.PASS, "PARSED_RANGE", "volume=50")
    failed = CertifyRecord.for_case(catalog.truth_case(catalog.by_key["android"]))
    failed.set_outcome(ResultStatus.NO_REPLY, "NO_REPLY", "No reply within timeout")
    skipped = CertifyRecord.skipped(catalog.truth_case(catalog.by_key["serial"]), "Serial only")
    return [passed, failed, skipped]


def test_record_to_dict_uses_camel_case(records):
    data = records[0].to_dict()
    assert data["commandKey"] == "query-volume"
    assert data["transportStatus"] == "REPLY"
    assert data["statusColor"] == "GREEN"
    assert data["rxHex"] == "55"
    assert data["validationMode"] == "STRICT_EXACT"


def test_skipped_record(records):
    data = records[2].to_dict()
    assert data["status"] == "SKIPPED"
    assert data["skipReason"] == "Serial only"
    assert data["notes"] == ["Serial only"]


def test_add_note_joins_text(records):
    record = records[0]
    record.add_note("first")
    record.add_note("second")
    assert record.note == "first | second"
    assert record.notes[-2:] == ["first", "second"]


def test_summarize(records):
    assert summarize(records) == {"pass": 1, "fail": 0, "noReply": 1, "skipped": 1}


def test_issues_document_excludes_passes(records):
    document = build_issues_document(records, "certify-x.json")
    assert document["summary"] == {"total": 2, "fail": 0, "noReply": 1, "skipped": 1}
    assert [r["commandKey"] for r in document["records"]] == ["android", "serial"]


def test_write_run_report(records, tmp_path):
    started = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    run_path, issues_path = write_run_report(records, tmp_path / "out", started, started, {"rate": 1})
    assert run_path.name == f"certify-{file_stamp(started)}.json"
    assert issues_path.name.endswith(".issues.json")
    document = json.loads(run_path.read_text(encoding="utf-8"))
    assert document["options"] == {"rate": 1}
    assert len(document["records"]) == 3
    issues = json.loads(issues_path.read_text(encoding="utf-8"))
    assert issues["generatedFrom"] == run_path.name


def test_options_defaults_validate():
    options = CertifyOptions().validate()
    assert options.rate_interval_ms == 1000
    assert options.to_dict()["target_host"] == "192.168.0.20"


@pytest.mark.parametrize("field,value", [
    ("target_port", 0),
    ("local_port", 70000),
    ("timeout_ms", 0),
    ("rate", 0),
    ("settle_set_ms", -1),
    ("profile", "unknown"),
])
def test_options_reject_bad_values(field, value):
    with pytest.raises(ConfigurationError):
        CertifyOptions(**{field: value}).validate()


def test_parse_target():
    assert parse_target("192.168.0.20:8600") == ("192.168.0.20", 8600)
    with pytest.raises(ConfigurationError):
        parse_target("host:notaport")
    with pytest.raises(ConfigurationError):
        parse_target("host:0")


@pytest.mark.parametrize("rate,interval", [(1, 1000), (3, 333), (400, 3), (2000, 1), (5000, 1)])
def test_rate_interval_rounds_half_up(rate, interval):
    assert CertifyOptions(rate=rate).rate_interval_ms == interval
