"""
Harness Error Hierarchy
=======================

Base exception types shared by every harness component.

Each component defines its own subclasses next to the code that raises
them; this module only holds the roots so callers can catch a whole
family at once.

Error Families:
- ConfigError: configuration problems, global, abort the run
- HarnessError: everything else, isolated to the failing case
"""

from __future__ import annotations

from typing import Optional


class HarnessError(Exception):
    """
    Base class for all harness failures.

    Carries the case and checkpoint the failure belongs to, so a report
    line is actionable without re-running the subject.
    """

    def __init__(
        self,
        message: str,
        case: Optional[str] = None,
        checkpoint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.case = case
        self.checkpoint = checkpoint

    def with_context(
        self,
        case: Optional[str] = None,
        checkpoint: Optional[str] = None,
    ) -> "HarnessError":
        """Fill in missing context and return self (for re-raising)."""
        if self.case is None:
            self.case = case
        if self.checkpoint is None:
            self.checkpoint = checkpoint
        return self

    def __str__(self) -> str:
        parts = []
        if self.case is not None:
            parts.append(f"case={self.case}")
        if self.checkpoint is not None:
            parts.append(f"checkpoint={self.checkpoint}")
        if parts:
            return f"{self.message} ({', '.join(parts)})"
        return self.message


class ConfigError(HarnessError):
    """Raised when the run cannot start because of bad configuration."""
    pass
