"""
Verdict module - Pass/fail decisions and the run report.
"""

from memory_testing.verdict.engine import (
    EXIT_CONFIG_ERROR,
    EXIT_HARNESS_FAILURE,
    EXIT_LEAK,
    EXIT_OK,
    CheckpointFailure,
    CheckpointRecord,
    FailureKind,
    RunSummary,
    Verdict,
    VerdictStatus,
    error_verdict,
    evaluate,
    summarize,
)
from memory_testing.verdict.report import build_report, verify_report, write_report

__all__ = [
    "EXIT_CONFIG_ERROR",
    "EXIT_HARNESS_FAILURE",
    "EXIT_LEAK",
    "EXIT_OK",
    "CheckpointFailure",
    "CheckpointRecord",
    "FailureKind",
    "RunSummary",
    "Verdict",
    "VerdictStatus",
    "error_verdict",
    "evaluate",
    "summarize",
    "build_report",
    "verify_report",
    "write_report",
]
