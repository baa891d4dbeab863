"""Tests for case construction and run-mode expansion."""

import logging

import pytest

from device_certify.engine.cases import (
    IssuesRun,
    SanityRun,
    SingleRun,
    SuiteRun,
    TruthCatalog,
    build_cases,
    build_issues_cases,
    build_single_case,
    mode_name,
    verify_truth_checksums,
)
from device_certify.errors import ConfigurationError
from device_certify.models.case import SOURCE_GENERATED, SOURCE_SANITY, STAGE_POWER_MANUAL
from device_certify.models.truth import IssueRecord
from device_certify.utils.checksum import compute_checksum

from frames import build_request, row, truth_rows


@pytest.fixture
def catalog():
    return TruthCatalog.from_rows(truth_rows())


def test_numeric_specs_derived(catalog):
    """Volume and brightness rows become numeric specs with their query rows."""
    assert set(catalog.numeric_specs) == {"C203", "C21F"}
    spec = catalog.numeric_specs["C203"]
    assert spec.value_index == 38
    assert spec.checksum_index == 39
    assert spec.query_row.command_key == "query-volume"


def test_numeric_spec_checksum_not_last_is_fatal():
    """A numeric baseline longer than 40 bytes is a configuration error."""
    rows = [row("vol", "C203", build_request("C203") + b"\x00", "Set volume")]
    with pytest.raises(ConfigurationError, match="not last byte"):
        TruthCatalog.from_rows(rows)


def test_suite_generates_101_cases_per_numeric_code(catalog):
    cases = build_cases(SuiteRun(), catalog)
    for code in ("0xC203", "0xC21F"):
        generated = [c for c in cases if c.set_code == code]
        assert [c.generated_value for c in generated] == list(range(101))
        assert all(c.source == SOURCE_GENERATED for c in generated)
    # numeric truth rows are replaced by their sweeps
    assert all(c.command_key != "volume" for c in cases)


def test_suite_places_power_cases_last(catalog):
    cases = build_cases(SuiteRun(), catalog)
    power = [i for i, c in enumerate(cases) if c.is_power_command]
    assert power == [len(cases) - 1]
    assert cases[-1].stage == STAGE_POWER_MANUAL
    assert cases[-1].is_disruptive


def test_generated_case_bytes(catalog):
    case = build_single_case(catalog, "C203", 50)
    assert case.tx_bytes[38] == 50
    assert case.tx_bytes[39] == 0x8D
    assert case.tx_bytes[39] == compute_checksum(case.tx_bytes)
    assert case.description == "volume=50"
    assert case.expected_query_value == 50
    assert case.query_row.command_key == "query-volume"


def test_serial_only_detection(catalog):
    case = catalog.truth_case(catalog.by_key["serial"])
    assert case.serial_only


def test_single_by_key_uses_truth_row(catalog):
    case = build_single_case(catalog, "android")
    assert case.command_key == "android"
    assert case.is_mode_change


def test_single_by_key_with_value_synthesizes(catalog):
    """A numeric row's key plus a value builds a generated case."""
    case = build_single_case(catalog, "volume", 10)
    assert case.generated_value == 10


def test_single_numeric_code_requires_value(catalog):
    with pytest.raises(ConfigurationError, match="requires a value"):
        build_single_case(catalog, "C203")


def test_single_value_on_non_numeric_code(catalog):
    with pytest.raises(ConfigurationError, match="not valid"):
        build_single_case(catalog, "C213", 5)


def test_single_unknown_code(catalog):
    with pytest.raises(ConfigurationError, match="No command found"):
        build_single_case(catalog, "C9FF")


def test_single_value_out_of_range(catalog):
    with pytest.raises(ConfigurationError, match="Invalid value"):
        build_single_case(catalog, "C203", 101)


def test_single_non_hex_selector(catalog):
    with pytest.raises(ConfigurationError, match="Unknown single selector"):
        build_single_case(catalog, "---")


def test_sanity_cases(catalog):
    """Android source, volume=50, brightness=50, in that order."""
    cases = build_cases(SanityRun(), catalog)
    assert [c.command_key for c in cases][0] == "android"
    assert cases[1].set_code == "0xC203" and cases[1].generated_value == 50
    assert cases[2].set_code == "0xC21F" and cases[2].generated_value == 50
    assert all(c.source == SOURCE_SANITY for c in cases)


def test_sanity_without_source_rows():
    rows = [r for r in truth_rows() if r.set_code != "C213"]
    with pytest.raises(ConfigurationError, match="Android"):
        build_cases(SanityRun(), TruthCatalog.from_rows(rows))


def test_issues_dedupe_round_and_clamp(catalog):
    """Duplicate records collapse; values are rounded half-up and clamped."""
    records = [
        IssueRecord("volume:gen-50", "0xC203", 49.5, "FAIL", "MISMATCH"),
        IssueRecord("volume:gen-50", "0xC203", 49.5, "FAIL", "MISMATCH"),
        IssueRecord("volume:gen-150", "0xC203", 150, "NO_REPLY", "NO_REPLY"),
        IssueRecord("android", "0xC213", None, "PASS", "EXACT"),
        IssueRecord("query-source", "0xC211", None, "SKIPPED", "SKIPPED"),
        IssueRecord("standby", "0xC003", None, "NO_REPLY", "NO_REPLY"),
    ]
    cases = build_issues_cases(catalog, records)
    assert [c.generated_value for c in cases[:2]] == [50, 100]
    assert cases[2].command_key == "query-source"
    assert cases[-1].command_key == "standby"
    assert len(cases) == 4


def test_issues_fall_back_to_set_code(catalog):
    records = [IssueRecord("renamed", "C211", None, "FAIL", "MISMATCH")]
    cases = build_issues_cases(catalog, records)
    assert cases[0].command_key == "query-source"


def test_issues_unmapped_record_is_dropped(catalog, caplog):
    records = [IssueRecord("ghost", "C9FF", None, "FAIL", "MISMATCH")]
    with caplog.at_level(logging.WARNING):
        cases = build_issues_cases(catalog, records)
    assert cases == []
    assert "Could not map issue record" in caplog.text


def test_issues_run_reads_file(catalog, tmp_path):
    path = tmp_path / "issues.json"
    path.write_text(
        '{"records": [{"commandKey": "query-volume", "setCode": "0xC201", "status": "FAIL"}]}',
        encoding="utf-8",
    )
    cases = build_cases(IssuesRun(path=path), catalog)
    assert [c.command_key for c in cases] == ["query-volume"]


def test_verify_truth_checksums():
    """Only UDP-framed requests are checked."""
    good = build_request("C201")
    bad = good[:-1] + bytes([(good[-1] + 1) & 0xFF])
    rows = [row("a", "C201", good), row("b", "C201", bad), row("c", "C0AA", b"\x01\x02")]
    assert verify_truth_checksums(rows) == (2, 1)


def test_mode_names():
    assert mode_name(SingleRun("C203", 1)) == "single"
    assert mode_name(SuiteRun()) == "suite"
    assert mode_name(SanityRun()) == "sanity"
    assert mode_name(IssuesRun()) == "issues"
    with pytest.raises(TypeError):
        mode_name("suite")
