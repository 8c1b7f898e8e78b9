"""
Command-Line Entry Points
=========================

capture-dumps <subject-binary-path> <output-directory>
    Run every case from the cases file against the subject, keep one dump
    per checkpoint in the output directory, and exit with:
        0  all cases passed
        1  a secret was found where it must be absent
        2  harness or instrumentation failure (no leak)
        3  configuration or usage error

scan-dump <dump> (--hex H | --utf8 S | --base64 B)
    Search an existing dump (native or ELF core) for a pattern. Exits 1
    if found, 0 if not, 3 if the dump or pattern is unusable.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import NoReturn, Optional, Sequence

from memory_testing import __version__
from memory_testing.cases import registry
from memory_testing.cases.patterns import SecretDecodeError, decode_secret
from memory_testing.core.config import CAPTURE_BACKENDS, LOG_FILE_NAME, HarnessConfig
from memory_testing.core.errors import ConfigError
from memory_testing.core.logging import configure_logging, get_secure_logger
from memory_testing.orchestrator import run
from memory_testing.scan.scanner import scan_file
from memory_testing.snapshot.fileformat import SnapshotFormatError
from memory_testing.subject.driver import build_command
from memory_testing.utils.validators import ValidationError, validate_executable
from memory_testing.verdict.engine import (
    EXIT_CONFIG_ERROR,
    EXIT_HARNESS_FAILURE,
    EXIT_LEAK,
    EXIT_OK,
    RunSummary,
)


logger = get_secure_logger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors with the configuration exit code."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_CONFIG_ERROR, f"{self.prog}: error: {message}\n")


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="capture-dumps",
        description="Check that a subject wipes its secrets from memory.",
    )
    parser.add_argument("subject", help="instrumented subject binary (.py files run with this interpreter)")
    parser.add_argument("output", type=Path, help="directory for dumps, report and log")
    parser.add_argument("--cases", type=Path, metavar="FILE", help="cases file (default: cases.json next to the harness)")
    parser.add_argument("--case", action="append", dest="only", metavar="NAME", help="run only this case (repeatable)")
    parser.add_argument(
        "--subject-arg",
        action="append",
        default=[],
        metavar="ARG",
        help="extra argument passed to the subject before the case arguments (repeatable)",
    )
    parser.add_argument("--timeout", type=float, metavar="SECONDS", help="per-checkpoint wait")
    parser.add_argument("--jobs", type=int, metavar="N", help="cases to run in parallel")
    parser.add_argument("--backend", choices=sorted(CAPTURE_BACKENDS), help="memory capture backend")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="console and file log level",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _load_config(args: argparse.Namespace) -> HarnessConfig:
    config = HarnessConfig.load()
    return config.with_overrides(
        paths={"cases_file": args.cases.expanduser().resolve() if args.cases else None},
        capture={
            "backend": args.backend,
            "checkpoint_timeout_seconds": args.timeout,
        },
        run={"jobs": args.jobs},
        logging={"level": args.log_level},
    )


def _print_summary(summary: RunSummary) -> None:
    for verdict in summary.verdicts:
        if verdict.passed:
            print(f"PASS  {verdict.case}")
            continue
        kind = verdict.failure.value
        if verdict.leak_detected and kind != "LEAK_DETECTED":
            kind += " +LEAK_DETECTED"
        print(f"FAIL  {verdict.case}  {kind} at {verdict.failed_checkpoint}: {verdict.detail}")

    counts = summary.to_dict()
    print(f"{counts['passed']}/{counts['cases']} case(s) passed")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``capture-dumps``."""
    args = _build_parser().parse_args(argv)

    try:
        config = _load_config(args)
        subject = validate_executable(args.subject)
    except (ConfigError, ValidationError) as e:
        print(f"capture-dumps: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    output_dir = args.output.expanduser().resolve()
    log_file = None
    if config.logging.enable_file:
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print(f"capture-dumps: cannot create {output_dir}: {e}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        log_file = output_dir / LOG_FILE_NAME

    configure_logging(
        log_file=log_file,
        level=config.logging.level,
        enable_console=config.logging.enable_console,
        enable_json=config.logging.enable_json,
        max_file_size=config.logging.max_file_size_bytes,
        backup_count=config.logging.backup_count,
    )

    try:
        cases = registry.load(config.paths.cases_file)
        if args.only:
            unknown = sorted(set(args.only) - {case.name for case in cases})
            if unknown:
                raise ConfigError(f"No such case(s) in {config.paths.cases_file}: {', '.join(unknown)}")
            cases = tuple(case for case in cases if case.name in args.only)

        command = [*build_command(subject), *args.subject_arg]
        summary = run(command, output_dir, cases, config, cases_file=config.paths.cases_file)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR
    except Exception:
        logger.exception("Harness failure")
        return EXIT_HARNESS_FAILURE

    _print_summary(summary)
    return summary.exit_code


def _build_scan_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="scan-dump",
        description="Search a memory dump for an exact byte pattern.",
    )
    parser.add_argument("dump", type=Path)
    pattern = parser.add_mutually_exclusive_group(required=True)
    pattern.add_argument("--hex", metavar="HEX")
    pattern.add_argument("--utf8", metavar="TEXT")
    pattern.add_argument("--base64", metavar="B64")
    parser.add_argument("--json", action="store_true", help="print the result as JSON")
    return parser


def scan_main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``scan-dump``."""
    args = _build_scan_parser().parse_args(argv)

    for encoding in ("hex", "utf8", "base64"):
        value = getattr(args, encoding)
        if value is not None:
            break

    try:
        pattern = decode_secret({encoding: value})
        result = scan_file(args.dump, pattern)
    except (SecretDecodeError, SnapshotFormatError) as e:
        print(f"scan-dump: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.json:
        print(json.dumps({
            "dump": str(args.dump),
            "case": result.case,
            "checkpoint": result.checkpoint,
            "found": result.found,
            "bytes_scanned": result.bytes_scanned,
            "occurrences": [occurrence.to_dict() for occurrence in result.occurrences],
        }, indent=2))
    else:
        for occurrence in result.occurrences:
            suffix = " (spans region boundary)" if occurrence.spans_boundary else ""
            print(f"{occurrence.address:#x}  region {occurrence.region_index} +{occurrence.offset:#x}{suffix}")
        print(f"{result.count} occurrence(s) in {result.bytes_scanned} bytes")

    return EXIT_LEAK if result.found else EXIT_OK
