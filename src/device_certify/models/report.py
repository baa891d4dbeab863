"""JSON report files written at the end of a run.

certify-<stamp>.json         every record plus summary and run options
certify-<stamp>.issues.json  FAIL / NO_REPLY / SKIPPED records only; this
                             file can be fed back into issues replay mode
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from .record import CertifyRecord, summarize
from .status import ISSUE_STATUSES


def file_stamp(when: datetime) -> str:
    return when.isoformat(timespec="milliseconds").replace(":", "-").replace(".", "-").replace("+", "_")


def build_run_document(
    records: list[CertifyRecord],
    started_at: datetime,
    finished_at: datetime,
    options: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "startedAt": started_at.isoformat(),
        "finishedAt": finished_at.isoformat(),
        "options": options or {},
        "summary": summarize(records),
        "records": [r.to_dict() for r in records],
    }


def build_issues_document(records: list[CertifyRecord], generated_from: str) -> dict[str, Any]:
    issues = [r for r in records if r.status.value in ISSUE_STATUSES]
    summary = summarize(issues)
    return {
        "generatedFrom": generated_from,
        "summary": {
            "total": len(issues),
            "fail": summary["fail"],
            "noReply": summary["noReply"],
            "skipped": summary["skipped"],
        },
        "records": [r.to_dict() for r in issues],
    }


def write_run_report(
    records: list[CertifyRecord],
    output_dir: str | Path,
    started_at: datetime,
    finished_at: datetime,
    options: dict[str, Any] | None = None,
) -> tuple[Path, Path]:
    """Write the run and issues documents.

    Returns:
        ``(run_path, issues_path)``.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stamp = file_stamp(started_at)
    run_path = output_dir / f"certify-{stamp}.json"
    issues_path = output_dir / f"certify-{stamp}.issues.json"

    document = build_run_document(records, started_at, finished_at, options)
    run_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
    issues = build_issues_document(records, run_path.name)
    issues_path.write_text(json.dumps(issues, indent=2), encoding="utf-8")
    return run_path, issues_path
