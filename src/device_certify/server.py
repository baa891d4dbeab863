"""MCP server entry point for the device certification engine.

Exposes the engine's run modes as tools and the last run's records as a
resource, using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from .engine.cases import IssuesRun, RunMode, SanityRun, SingleRun, SuiteRun, TruthCatalog
from .engine.options import DEFAULT_PORT, DEFAULT_TARGET_HOST, CertifyOptions
from .engine.runner import RunResult, run
from .errors import CertifyError
from .models.report import build_run_document
from .models.truth import (
    DEFAULT_PROFILE,
    PROFILE_EXCLUSION_FILES,
    IssueRecord,
    load_truth,
    profile_exclusions,
)
from .protocol.commands import CLOSED_LOOP_QUERY_BY_SET, FORMULA_CHECKSUM_BASE, value_label
from .protocol.framing import normalize_code, to_code

logger = logging.getLogger(__name__)

TRUTH_ENV = "DEVICE_CERTIFY_TRUTH"
DEFAULT_TRUTH_PATH = Path("data") / "commands.truth.json"

mcp = FastMCP(
    "device-certify",
    instructions="Certify a networked display controller's UDP command set",
)

_last_run: RunResult | None = None
_last_options: CertifyOptions | None = None


def _truth_path() -> Path:
    return Path(os.environ.get(TRUTH_ENV) or DEFAULT_TRUTH_PATH)


def _load_catalog() -> TruthCatalog:
    return TruthCatalog.from_rows(load_truth(_truth_path()))


def _no_prompt(prompt: str) -> None:
    logger.info("%s (MCP session, auto-continue)", prompt)


def _execute(mode: RunMode, options: CertifyOptions) -> dict[str, Any]:
    """Run one mode and return the run document, or an error payload."""
    global _last_run, _last_options
    try:
        rows = load_truth(_truth_path())
        result = run(mode, rows, options, confirm=_no_prompt)
    except (CertifyError, OSError) as e:
        return {"error": str(e)}
    _last_run = result
    _last_options = options
    return build_run_document(result.records, result.started_at, result.finished_at, options.to_dict())


def _options(
    target_host: str,
    target_port: int,
    local_port: int,
    timeout_ms: float,
    profile: str,
    include_power: bool = False,
    closed_loop: bool = False,
) -> CertifyOptions:
    return CertifyOptions(
        target_host=target_host,
        target_port=target_port,
        local_port=local_port,
        timeout_ms=timeout_ms,
        profile=profile,
        include_power=include_power,
        closed_loop=closed_loop,
    )


def short_title(category: str) -> str:
    """Category text without its leading Set/Query/Get verb."""
    text = category.strip()
    if not text:
        return "Command"
    for verb in ("set ", "query ", "get "):
        if text.lower().startswith(verb):
            return text[len(verb):].strip()
    return text


# ─── CATALOG TOOLS ────────────────────────────────────────────────────

@mcp.tool()
def list_commands(profile: str = DEFAULT_PROFILE) -> dict[str, Any]:
    """List truth commands grouped by command code.

    Args:
        profile: Device profile whose suite exclusions are reported.
    """
    try:
        catalog = _load_catalog()
        exclusions = profile_exclusions(profile)
    except CertifyError as e:
        return {"error": str(e)}

    commands: dict[str, dict[str, Any]] = {}
    for row in catalog.rows:
        code = to_code(row.set_command_code)
        if not code:
            continue
        category = row.category.strip() or "Other"
        entry = commands.get(code)
        if entry is None:
            normalized = normalize_code(code)
            entry = commands[code] = {
                "commandCode": code,
                "category": category,
                "shortTitle": short_title(category),
                "description": row.description or row.command_key,
                "defaultSelector": row.command_key,
                "replyCode": to_code(row.reply_command_code),
                "variants": [],
                "excludedInSuite": normalized in exclusions,
                "exclusionReason": exclusions.get(normalized or ""),
            }
        entry["variants"].append({
            "selector": row.command_key,
            "variant": row.description or row.remark,
        })

    ordered = sorted(commands.values(), key=lambda c: int(normalize_code(c["commandCode"]) or "FFFF", 16))
    for entry in ordered:
        entry["variantCount"] = len(entry["variants"])
    return {"commands": ordered, "count": len(ordered)}


@mcp.tool()
def list_numeric_commands() -> dict[str, Any]:
    """List numeric set commands that accept a 0-100 value."""
    try:
        catalog = _load_catalog()
    except CertifyError as e:
        return {"error": str(e)}

    numeric = []
    for code, spec in catalog.numeric_specs.items():
        numeric.append({
            "setCode": to_code(code),
            "label": value_label(code),
            "valueIndex": spec.value_index,
            "checksumIndex": spec.checksum_index,
            "baseCommandKey": spec.base_row.command_key,
            "formulaBase": (
                f"0x{FORMULA_CHECKSUM_BASE[code]:02X}" if code in FORMULA_CHECKSUM_BASE else None
            ),
            "queryCode": to_code(CLOSED_LOOP_QUERY_BY_SET.get(code)),
            "queryCommandKey": spec.query_row.command_key if spec.query_row else None,
        })
    return {"numeric": numeric, "count": len(numeric)}


# ─── RUN TOOLS ────────────────────────────────────────────────────────

@mcp.tool()
def run_single(
    selector: str,
    value: int | None = None,
    target_host: str = DEFAULT_TARGET_HOST,
    target_port: int = DEFAULT_PORT,
    local_port: int = 0,
    timeout_ms: float = 1200,
    profile: str = DEFAULT_PROFILE,
    closed_loop: bool = False,
) -> dict[str, Any]:
    """Send one command and classify the reply.

    Args:
        selector: Command key or set code (e.g. "C203").
        value: Value 0-100, required for numeric set codes.
        target_host: Device IP or hostname.
        target_port: Device UDP port.
        local_port: Local UDP port (0 = ephemeral).
        timeout_ms: Reply timeout.
        profile: Device profile.
        closed_loop: Read the value back after a set command.
    """
    options = _options(target_host, target_port, local_port, timeout_ms, profile, closed_loop=closed_loop)
    return _execute(SingleRun(selector=selector, value=value), options)


@mcp.tool()
def run_sanity(
    target_host: str = DEFAULT_TARGET_HOST,
    target_port: int = DEFAULT_PORT,
    local_port: int = 0,
    timeout_ms: float = 1200,
    profile: str = DEFAULT_PROFILE,
) -> dict[str, Any]:
    """Run the smoke test: Android source, volume=50, brightness=50."""
    options = _options(target_host, target_port, local_port, timeout_ms, profile)
    return _execute(SanityRun(), options)


@mcp.tool()
def run_suite(
    target_host: str = DEFAULT_TARGET_HOST,
    target_port: int = DEFAULT_PORT,
    local_port: int = 0,
    timeout_ms: float = 1200,
    profile: str = DEFAULT_PROFILE,
    include_power: bool = False,
    closed_loop: bool = False,
) -> dict[str, Any]:
    """Run every truth command, sweeping numeric codes over 0-100.

    A full suite takes several minutes at the default rate.

    Args:
        include_power: Also send standby, power-off and restart commands.
    """
    options = _options(
        target_host, target_port, local_port, timeout_ms, profile,
        include_power=include_power, closed_loop=closed_loop,
    )
    return _execute(SuiteRun(), options)


@mcp.tool()
def run_issues(
    issues_path: str | None = None,
    target_host: str = DEFAULT_TARGET_HOST,
    target_port: int = DEFAULT_PORT,
    local_port: int = 0,
    timeout_ms: float = 1200,
    profile: str = DEFAULT_PROFILE,
    include_power: bool = False,
) -> dict[str, Any]:
    """Replay FAIL, NO_REPLY and SKIPPED records.

    Args:
        issues_path: Issues JSON file; defaults to the last run in this session.
    """
    options = _options(
        target_host, target_port, local_port, timeout_ms, profile, include_power=include_power
    )
    if issues_path:
        return _execute(IssuesRun(path=issues_path), options)
    if _last_run is None:
        return {"error": "No issues file given and no previous run in this session"}
    records = tuple(IssueRecord.from_dict(r.to_dict()) for r in _last_run.records)
    return _execute(IssuesRun(records=records), options)


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("certify://profiles")
def resource_profiles() -> str:
    """Known device profiles and their suite exclusions."""
    profiles = []
    for name in PROFILE_EXCLUSION_FILES:
        try:
            exclusions = profile_exclusions(name)
        except CertifyError as e:
            profiles.append({"profile": name, "error": str(e)})
            continue
        profiles.append({
            "profile": name,
            "default": name == DEFAULT_PROFILE,
            "excludeFromSuite": [
                {"code": to_code(code), "reason": reason} for code, reason in exclusions.items()
            ],
        })
    return json.dumps({"profiles": profiles})


@mcp.resource("certify://last-run")
def resource_last_run() -> str:
    """Records of the most recent run in this session."""
    if _last_run is None:
        return json.dumps({"records": []})
    options = _last_options.to_dict() if _last_options else {}
    return json.dumps(
        build_run_document(_last_run.records, _last_run.started_at, _last_run.finished_at, options)
    )


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
