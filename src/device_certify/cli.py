"""Command-line entry point: ``device-certify``.

Examples::

    device-certify --suite --target 192.168.0.20:8600
    device-certify --single C203 --value 50
    device-certify --issues-file reports/certify-2026-01-01T00-00-00-000_00-00.issues.json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .engine.cases import IssuesRun, RunMode, SanityRun, SingleRun, SuiteRun
from .engine.options import DEFAULT_PORT, DEFAULT_TARGET_HOST, CertifyOptions, parse_target
from .engine.runner import run
from .errors import CertifyError
from .models.report import write_run_report
from .models.truth import PROFILE_EXCLUSION_FILES, load_suite_exclusions, load_truth

logger = logging.getLogger(__name__)

DEFAULT_TRUTH_PATH = Path("data") / "commands.truth.json"
DEFAULT_OUTPUT_DIR = Path("reports")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="device-certify",
        description="UDP command certification for networked display controllers.",
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--single", metavar="KEY_OR_CODE", help="Run one command key or set code")
    mode.add_argument("--suite", action="store_true", help="Run every truth command")
    mode.add_argument(
        "--sanity-test",
        dest="sanity",
        action="store_true",
        help="Run Android source, volume=50 and brightness=50",
    )
    mode.add_argument(
        "--issues-file",
        "--issues-only",
        dest="issues_file",
        metavar="PATH",
        help="Replay FAIL/NO_REPLY/SKIPPED records from an earlier run",
    )

    parser.add_argument("--value", type=int, help="Value 0-100 for numeric single commands")
    parser.add_argument(
        "--target",
        default=f"{DEFAULT_TARGET_HOST}:{DEFAULT_PORT}",
        help="Device address as host:port",
    )
    parser.add_argument("--local-port", type=int, default=DEFAULT_PORT, help="Local UDP port (0 = ephemeral)")
    parser.add_argument("--timeout", type=float, default=1200, help="Reply timeout in ms")
    parser.add_argument("--rate", type=float, default=1.0, help="Commands per second")
    parser.add_argument("--settle-set", type=float, default=400, help="Delay after set commands in ms")
    parser.add_argument("--settle-mode", type=float, default=1200, help="Delay after mode changes in ms")
    parser.add_argument("--profile", choices=list(PROFILE_EXCLUSION_FILES), default="exview-aio")
    parser.add_argument("--include-power", action="store_true", help="Run power-stage commands")
    parser.add_argument("--prompt-each", action="store_true", help="Press Enter before each send")
    parser.add_argument("--closed-loop", action="store_true", help="Read values back after set commands")
    parser.add_argument("--debug-hex", action="store_true", help="Log TX/RX hex dumps")
    parser.add_argument("--truth", type=Path, default=DEFAULT_TRUTH_PATH, help="Truth dataset JSON")
    parser.add_argument("--exclusions", type=Path, help="Override the profile's suite exclusion file")
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR, help="Report directory")
    return parser


def _run_mode(args: argparse.Namespace) -> RunMode:
    if args.single:
        return SingleRun(selector=args.single, value=args.value)
    if args.suite:
        return SuiteRun()
    if args.sanity:
        return SanityRun()
    return IssuesRun(path=args.issues_file)


def options_from_args(args: argparse.Namespace) -> CertifyOptions:
    host, port = parse_target(args.target)
    return CertifyOptions(
        target_host=host,
        target_port=port,
        local_port=args.local_port,
        timeout_ms=args.timeout,
        rate=args.rate,
        settle_set_ms=args.settle_set,
        settle_mode_ms=args.settle_mode,
        profile=args.profile,
        include_power=args.include_power,
        prompt_each=args.prompt_each,
        debug_hex=args.debug_hex,
        closed_loop=args.closed_loop,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.value is not None and not args.single:
        parser.error("--value is only valid with --single")

    logging.basicConfig(
        level=logging.DEBUG if args.debug_hex else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        options = options_from_args(args).validate()
        rows = load_truth(args.truth)
        exclusions = load_suite_exclusions(args.exclusions) if args.exclusions else None
        result = run(_run_mode(args), rows, options, exclusions)
        run_path, issues_path = write_run_report(
            result.records, args.output_dir, result.started_at, result.finished_at, options.to_dict()
        )
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130
    except (CertifyError, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    logger.info("Report written: %s", run_path)
    logger.info("Issues written: %s", issues_path)
    if len(result.records) == 1:
        record = result.records[0]
        if record.meaning:
            logger.info("Meaning: %s", record.meaning)
        if record.parsed:
            logger.info("Parsed: %s", json.dumps(record.parsed))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
