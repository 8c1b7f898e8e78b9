"""
Orchestrator
============

Runs every declared case against a subject and produces the verdicts.

Per case:
    spawn subject -> attach -> for each checkpoint:
        arm -> wait for the announcement -> suspend -> capture -> resume -> scan
    -> verdict

Isolation:
- Each case has its own subject process, driver and attachment.
- Any failure inside a case becomes that case's verdict; other cases
  still run.
- Configuration problems (including output that would overwrite earlier
  artifacts) are found before any subject is started and abort the run.

Artifacts:
    <output>/<case>/<checkpoint>.dump   one per captured checkpoint
    <output>/report.json                verdicts with dump digests
"""

from __future__ import annotations

import concurrent.futures
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from memory_testing.capture.capturer import DebugHandle, DumpCapturer
from memory_testing.capture.errors import CaptureError, CaptureStateError, ProcessGone
from memory_testing.cases.models import Expectation, TestCase
from memory_testing.core.config import REPORT_FILE_NAME, HarnessConfig
from memory_testing.core.errors import ConfigError, HarnessError
from memory_testing.core.logging import get_secure_logger
from memory_testing.scan.scanner import ScanResult, scan
from memory_testing.snapshot.fileformat import SnapshotExists, SnapshotFormatError
from memory_testing.subject.driver import (
    CheckpointEvent,
    SubjectCrashed,
    SubjectDriver,
    SubjectTimeout,
)
from memory_testing.utils.paths import dump_path
from memory_testing.verdict.engine import (
    CheckpointFailure,
    FailureKind,
    RunSummary,
    Verdict,
    error_verdict,
    evaluate,
    summarize,
)
from memory_testing.verdict.report import write_report


logger = get_secure_logger(__name__)


class OutputCollision(ConfigError):
    """A planned artifact would overwrite an existing file."""
    pass


def plan_outputs(output_dir: Path, cases: Sequence[TestCase]) -> dict[tuple[str, str], Path]:
    """Dump path for every (case, checkpoint) pair."""
    return {
        (case.name, name): dump_path(output_dir, case.name, name)
        for case in cases
        for name in case.checkpoint_names
    }


def preflight(output_dir: Path, cases: Sequence[TestCase]) -> dict[tuple[str, str], Path]:
    """
    Prepare the output directory and make sure nothing will be overwritten.

    Returns:
        The planned dump paths

    Raises:
        ConfigError: If the directory cannot be used
        OutputCollision: If a planned dump or the report already exists,
            or two planned artifacts share a path
    """
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Cannot create output directory {output_dir}: {e}") from e
    if not os.access(output_dir, os.W_OK | os.X_OK):
        raise ConfigError(f"Output directory is not writable: {output_dir}")

    plan = plan_outputs(output_dir, cases)

    seen: dict[Path, tuple[str, str]] = {}
    for key, path in plan.items():
        if path in seen:
            raise OutputCollision(
                f"Checkpoint {key[1]!r} of case {key[0]!r} would share {path} "
                f"with checkpoint {seen[path][1]!r} of case {seen[path][0]!r}",
                case=key[0],
            )
        seen[path] = key

    report = output_dir / REPORT_FILE_NAME
    for existing in [report, *plan.values()]:
        if existing.exists():
            raise OutputCollision(
                f"{existing} already exists; use a fresh output directory"
            )

    return plan


@dataclass
class _CaseOutcome:
    """Collects what happened at each checkpoint of a running case."""
    results: dict[str, ScanResult] = field(default_factory=dict)
    failures: dict[str, CheckpointFailure] = field(default_factory=dict)
    dumps: dict[str, Path] = field(default_factory=dict)
    written: set[Path] = field(default_factory=set)

    def fail(self, checkpoint: Optional[str], kind: FailureKind, message: str) -> None:
        # The first failure recorded for a checkpoint is the one reported
        if checkpoint is not None and checkpoint not in self.results:
            self.failures.setdefault(checkpoint, CheckpointFailure(kind, message))


class Orchestrator:
    """
    Runs a set of cases against one subject.

    Usage:
        orchestrator = Orchestrator(command, output_dir, cases, config)
        summary = orchestrator.run()
        sys.exit(summary.exit_code)
    """

    def __init__(
        self,
        subject_command: Sequence[str],
        output_dir: Path,
        cases: Sequence[TestCase],
        config: HarnessConfig,
        cases_file: Optional[Path] = None,
    ) -> None:
        if not cases:
            raise ConfigError("No test cases to run")
        self._command = list(subject_command)
        self._output_dir = Path(output_dir)
        self._cases = tuple(cases)
        self._config = config
        self._cases_file = Path(cases_file) if cases_file else config.paths.cases_file
        self._plan: dict[tuple[str, str], Path] = {}

    def run(self) -> RunSummary:
        """
        Run every case and write the report.

        Raises:
            ConfigError: Before any subject starts, if the run cannot proceed
        """
        self._plan = preflight(self._output_dir, self._cases)
        started_at = datetime.now(timezone.utc).isoformat()
        jobs = min(self._config.run.jobs, len(self._cases))

        logger.info(
            "Running %d case(s) against %s with %d worker(s), %s capture",
            len(self._cases), self._command[-1], jobs, self._config.capture.backend,
        )

        verdicts: list[Verdict] = []
        if jobs == 1:
            for case in self._cases:
                verdicts.append(self._run_case_isolated(case))
        else:
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=jobs, thread_name_prefix="case"
            ) as executor:
                future_to_case = {
                    executor.submit(self._run_case_isolated, case): case
                    for case in self._cases
                }
                for future in concurrent.futures.as_completed(future_to_case):
                    verdicts.append(future.result())

        summary = summarize(verdicts, started_at=started_at)
        try:
            write_report(
                self._output_dir / REPORT_FILE_NAME,
                summary,
                subject=" ".join(self._command),
                config_hash=self._config.config_hash,
            )
        except FileExistsError as e:
            raise OutputCollision(f"Report appeared during the run: {e.filename}") from e

        logger.info(
            "Run finished: %d passed, %d failed, exit code %d",
            len(summary.verdicts) - len(summary.failed), len(summary.failed), summary.exit_code,
        )
        return summary

    def _run_case_isolated(self, case: TestCase) -> Verdict:
        try:
            verdict = self._run_case(case)
        except Exception as e:
            logger.exception("Unexpected error in case %s", case.name)
            verdict = error_verdict(case, FailureKind.HARNESS_ERROR, f"{type(e).__name__}: {e}")
        self._log_verdict(verdict)
        return verdict

    def _run_case(self, case: TestCase) -> Verdict:
        capture = self._config.capture
        capturer = DumpCapturer(capture)
        outcome = _CaseOutcome()
        names = case.checkpoint_names
        pending: Optional[str] = names[0]

        driver = SubjectDriver(
            self._command,
            self._cases_file,
            checkpoint_timeout=capture.checkpoint_timeout_seconds,
            exit_timeout=capture.exit_timeout_seconds,
        )
        try:
            # Leaving the block kills and reaps the subject if it is still running
            with driver:
                try:
                    pid = driver.start(case)
                    with capturer.attached(pid, case=case.name) as handle:
                        capturer.arm_checkpoint(handle, pending)
                        for event in driver.run(case):
                            self._capture_checkpoint(case, capturer, handle, event, outcome)
                            driver.resume()
                            following = event.index + 1
                            pending = names[following] if following < len(names) else None
                            if pending is not None:
                                capturer.arm_checkpoint(handle, pending)
                except SubjectTimeout as e:
                    logger.error("%s", e)
                    outcome.fail(e.checkpoint or pending, FailureKind.HARNESS_TIMEOUT, e.message)
                except (SubjectCrashed, ProcessGone) as e:
                    logger.error("%s", e)
                    outcome.fail(e.checkpoint or pending, FailureKind.SUBJECT_CRASHED, e.message)
                except HarnessError as e:
                    logger.error("%s", e)
                    outcome.fail(e.checkpoint or pending, FailureKind.HARNESS_ERROR, e.message)
        finally:
            self._discard_unscanned(case, outcome)

        return evaluate(case, outcome.results, outcome.failures, outcome.dumps)

    def _capture_checkpoint(
        self,
        case: TestCase,
        capturer: DumpCapturer,
        handle: DebugHandle,
        event: CheckpointEvent,
        outcome: _CaseOutcome,
    ) -> None:
        name = event.checkpoint
        path = self._plan[(case.name, name)]

        try:
            # Stop the subject before doing anything else with the event
            capturer.suspend(handle)
            snapshot = capturer.capture(handle, path, case.regions)
        except (ProcessGone, CaptureStateError):
            raise
        except (CaptureError, SnapshotFormatError) as e:
            logger.error("Capture failed: %s", e)
            outcome.fail(name, FailureKind.INCONCLUSIVE, e.message)
            capturer.resume(handle)
            return
        except SnapshotExists as e:
            logger.error("%s", e)
            outcome.fail(name, FailureKind.HARNESS_ERROR, e.message)
            capturer.resume(handle)
            return

        outcome.written.add(path)
        with snapshot:
            capturer.resume(handle)
            result = scan(snapshot, case.secret)

        outcome.results[name] = result
        outcome.dumps[name] = path

        expectation = case.checkpoint(name).expectation
        if result.found and expectation is Expectation.ABSENT:
            logger.critical(
                "LEAK: case %s still holds its secret at checkpoint %s (%d occurrence(s), first at %#x)",
                case.name, name, result.count, result.occurrences[0].address,
            )
        else:
            logger.info(
                "Case %s checkpoint %s: secret %s (%d occurrence(s))",
                case.name, name, "found" if result.found else "not found", result.count,
            )

    def _discard_unscanned(self, case: TestCase, outcome: _CaseOutcome) -> None:
        """Remove dumps this run wrote for checkpoints that never produced a result."""
        for name in case.checkpoint_names:
            path = self._plan[(case.name, name)]
            if name in outcome.results or path not in outcome.written:
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            logger.warning("Discarded partial dump %s", path)

    @staticmethod
    def _log_verdict(verdict: Verdict) -> None:
        if verdict.passed:
            logger.info("PASS %s", verdict.case)
        elif verdict.leak_detected:
            logger.critical("FAIL %s: LEAK_DETECTED (%s)", verdict.case, verdict.detail)
        else:
            logger.error(
                "FAIL %s: %s at %s (%s)",
                verdict.case, verdict.failure.value, verdict.failed_checkpoint, verdict.detail,
            )


def run(
    subject_command: Sequence[str],
    output_dir: Path,
    cases: Sequence[TestCase],
    config: HarnessConfig,
    cases_file: Optional[Path] = None,
) -> RunSummary:
    """Run ``cases`` against a subject and return the summary."""
    return Orchestrator(subject_command, output_dir, cases, config, cases_file).run()
