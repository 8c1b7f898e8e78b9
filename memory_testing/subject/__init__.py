"""
Subject module - Driving instrumented subject processes.

Components:
- protocol.py: the checkpoint line protocol shared with subjects
- driver.py: spawning a subject and sequencing its checkpoints
- reference.py: a Python subject implementing the protocol
- secure_memory.py: secret buffers used by the reference subject
"""

from memory_testing.subject.driver import (
    CheckpointEvent,
    SubjectCrashed,
    SubjectDriver,
    SubjectError,
    SubjectProtocolError,
    SubjectSpawnError,
    SubjectTimeout,
    build_command,
)
from memory_testing.subject.protocol import (
    LEGACY_CHECKPOINT_LINE,
    RESUME_TOKEN,
    format_checkpoint,
    parse_line,
)

__all__ = [
    "CheckpointEvent",
    "SubjectCrashed",
    "SubjectDriver",
    "SubjectError",
    "SubjectProtocolError",
    "SubjectSpawnError",
    "SubjectTimeout",
    "build_command",
    "LEGACY_CHECKPOINT_LINE",
    "RESUME_TOKEN",
    "format_checkpoint",
    "parse_line",
]
