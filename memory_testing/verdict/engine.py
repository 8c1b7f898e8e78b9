"""
Verdict Engine
==============

Turns per-checkpoint scan results into a pass/fail verdict per case and
an exit code for the run.

Evaluation Rules:
- Checkpoints are checked in declared order; the first mismatch is the
  primary failure of the case.
- Secret found where it must be absent: LEAK_DETECTED.
- Secret not found where it must be present: SECRET_MISSING (the
  instrumentation or the pattern is wrong, not the subject).
- No scan result: the harness failure recorded for that checkpoint, or
  INCONCLUSIVE. A missing result is never read as "absent".
- A leak at any checkpoint sets ``leak_detected``, even when an earlier
  checkpoint already failed for another reason.

Exit Codes:
    0  every case passed
    1  at least one leak was detected
    2  harness or instrumentation failure, no leak
    3  configuration failure (raised before any verdict exists)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Final, Mapping, Optional

from memory_testing.cases.models import Expectation, TestCase
from memory_testing.scan.scanner import ScanResult


EXIT_OK: Final[int] = 0
EXIT_LEAK: Final[int] = 1
EXIT_HARNESS_FAILURE: Final[int] = 2
EXIT_CONFIG_ERROR: Final[int] = 3

_DIGEST_CHUNK: Final[int] = 1024 * 1024


class VerdictStatus(Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class FailureKind(Enum):
    """Why a case failed."""
    LEAK_DETECTED = "LEAK_DETECTED"
    SECRET_MISSING = "SECRET_MISSING"
    INCONCLUSIVE = "INCONCLUSIVE"
    HARNESS_TIMEOUT = "HARNESS_TIMEOUT"
    SUBJECT_CRASHED = "SUBJECT_CRASHED"
    HARNESS_ERROR = "HARNESS_ERROR"


@dataclass(frozen=True)
class CheckpointFailure:
    """A checkpoint that produced no scan result, and why."""
    kind: FailureKind
    message: str


@dataclass(frozen=True)
class CheckpointRecord:
    """What happened at one declared checkpoint."""
    checkpoint: str
    expected: Expectation
    found: Optional[bool] = None
    occurrences: int = 0
    dump_path: Optional[str] = None
    dump_sha256: Optional[str] = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.failure is None

    def to_dict(self) -> dict:
        return {
            "checkpoint": self.checkpoint,
            "expected": self.expected.value,
            "found": self.found,
            "occurrences": self.occurrences,
            "dump_path": self.dump_path,
            "dump_sha256": self.dump_sha256,
            "failure": self.failure.value if self.failure else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class Verdict:
    """Outcome of one test case."""
    case: str
    status: VerdictStatus
    records: tuple[CheckpointRecord, ...] = ()
    failure: Optional[FailureKind] = None
    failed_checkpoint: Optional[str] = None
    detail: str = ""
    leak_detected: bool = False

    @property
    def passed(self) -> bool:
        return self.status is VerdictStatus.PASS

    def to_dict(self) -> dict:
        return {
            "case": self.case,
            "status": self.status.value,
            "failure": self.failure.value if self.failure else None,
            "failed_checkpoint": self.failed_checkpoint,
            "detail": self.detail,
            "leak_detected": self.leak_detected,
            "checkpoints": [record.to_dict() for record in self.records],
        }


def sha256_file(path: Path) -> str:
    """Hex SHA-256 of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_DIGEST_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _record(
    name: str,
    expected: Expectation,
    result: Optional[ScanResult],
    failure: Optional[CheckpointFailure],
    dump: Optional[Path],
) -> CheckpointRecord:
    dump_path = dump_sha = None
    if dump is not None and dump.exists():
        dump_path, dump_sha = str(dump), sha256_file(dump)

    if result is None:
        failure = failure or CheckpointFailure(FailureKind.INCONCLUSIVE, "No dump was captured")
        return CheckpointRecord(
            checkpoint=name,
            expected=expected,
            dump_path=dump_path,
            dump_sha256=dump_sha,
            failure=failure.kind,
            error=failure.message,
        )

    kind = error = None
    if not expected.satisfied_by(result.found):
        if result.found:
            kind = FailureKind.LEAK_DETECTED
            error = f"Secret found {result.count} time(s) where it must be absent"
        else:
            kind = FailureKind.SECRET_MISSING
            error = "Secret not found where it must be present"

    return CheckpointRecord(
        checkpoint=name,
        expected=expected,
        found=result.found,
        occurrences=result.count,
        dump_path=dump_path,
        dump_sha256=dump_sha,
        failure=kind,
        error=error,
    )


def evaluate(
    case: TestCase,
    scan_results: Mapping[str, ScanResult],
    failures: Optional[Mapping[str, CheckpointFailure]] = None,
    dumps: Optional[Mapping[str, Path]] = None,
) -> Verdict:
    """
    Build the verdict for one case.

    Args:
        case: The case as declared
        scan_results: Scan result per checkpoint name
        failures: Harness failure per checkpoint name, for checkpoints
            without a scan result
        dumps: Dump file per checkpoint name, recorded with its digest

    Returns:
        Verdict with one record per declared checkpoint
    """
    failures = failures or {}
    dumps = dumps or {}

    records = tuple(
        _record(
            spec.name,
            spec.expectation,
            scan_results.get(spec.name),
            failures.get(spec.name),
            dumps.get(spec.name),
        )
        for spec in case.checkpoints
    )

    first = next((record for record in records if not record.passed), None)
    leak = any(record.failure is FailureKind.LEAK_DETECTED for record in records)

    if first is None:
        return Verdict(case=case.name, status=VerdictStatus.PASS, records=records)

    return Verdict(
        case=case.name,
        status=VerdictStatus.FAIL,
        records=records,
        failure=first.failure,
        failed_checkpoint=first.checkpoint,
        detail=first.error or "",
        leak_detected=leak,
    )


def error_verdict(case: TestCase, kind: FailureKind, message: str) -> Verdict:
    """Verdict for a case that failed outside any single checkpoint."""
    failure = CheckpointFailure(kind, message)
    return evaluate(case, {}, {spec.name: failure for spec in case.checkpoints[:1]})


@dataclass(frozen=True)
class RunSummary:
    """Verdicts of a whole run."""
    verdicts: tuple[Verdict, ...]
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def passed(self) -> bool:
        return all(verdict.passed for verdict in self.verdicts)

    @property
    def leak_detected(self) -> bool:
        return any(verdict.leak_detected for verdict in self.verdicts)

    @property
    def failed(self) -> tuple[Verdict, ...]:
        return tuple(verdict for verdict in self.verdicts if not verdict.passed)

    @property
    def exit_code(self) -> int:
        if self.leak_detected:
            return EXIT_LEAK
        if not self.passed:
            return EXIT_HARNESS_FAILURE
        return EXIT_OK

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "cases": len(self.verdicts),
            "passed": len(self.verdicts) - len(self.failed),
            "failed": len(self.failed),
            "leak_detected": self.leak_detected,
            "exit_code": self.exit_code,
        }


def summarize(verdicts, started_at: Optional[str] = None) -> RunSummary:
    """Combine case verdicts, ordered by case name for stable reports."""
    ordered = tuple(sorted(verdicts, key=lambda verdict: verdict.case))
    if started_at is None:
        return RunSummary(verdicts=ordered)
    return RunSummary(verdicts=ordered, started_at=started_at)
