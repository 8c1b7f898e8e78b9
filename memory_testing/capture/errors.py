"""
Capture Errors
==============

Failures of the dump capturer. Every one of them makes the affected
checkpoint inconclusive; none may ever be read as "secret absent".
"""

from __future__ import annotations

from memory_testing.core.errors import HarnessError


class CaptureError(HarnessError):
    """Base class for capture failures."""
    pass


class AttachDenied(CaptureError):
    """The harness may not inspect the subject (permissions or another tracer)."""
    pass


class ProcessGone(CaptureError):
    """The subject exited before or during the capture."""
    pass


class CaptureIncomplete(CaptureError):
    """An in-scope region could not be fully read."""

    def __init__(self, message: str, address: int | None = None, **context) -> None:
        super().__init__(message, **context)
        self.address = address


class CaptureStateError(CaptureError):
    """An operation was attempted in the wrong attachment state."""
    pass
