"""
Capture module - Suspending subjects and dumping their memory.

Components:
- capturer.py: attachment state machine and the DumpCapturer
- procfs.py: /proc maps parsing, region classes and memory reads
- gcore.py: gdb-based core dumps
- errors.py: capture failure types
"""

from memory_testing.capture.capturer import CaptureState, DebugHandle, DumpCapturer
from memory_testing.capture.errors import (
    AttachDenied,
    CaptureError,
    CaptureIncomplete,
    CaptureStateError,
    ProcessGone,
)

__all__ = [
    "CaptureState",
    "DebugHandle",
    "DumpCapturer",
    "AttachDenied",
    "CaptureError",
    "CaptureIncomplete",
    "CaptureStateError",
    "ProcessGone",
]
