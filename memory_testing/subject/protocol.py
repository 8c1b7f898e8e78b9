"""
Checkpoint Protocol
===================

Wire contract between the harness and an instrumented subject.

Subject side, at each checkpoint:
    1. write ``CHECKPOINT <name>\\n`` to stdout and flush
    2. block reading one byte from stdin
    3. continue only after that byte arrives

Between steps 1 and 3 the subject must not touch the secret's memory.

The legacy line ``Waiting for dump...`` (no name) is accepted too and
stands for the next checkpoint the case declares.

Harness side: write ``RESUME_TOKEN`` to the subject's stdin to let it
continue. Subjects are invoked as ``<subject> <cases-file> <case-name>``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Optional


CHECKPOINT_PREFIX: Final[str] = "CHECKPOINT "
LEGACY_CHECKPOINT_LINE: Final[str] = "Waiting for dump..."
RESUME_TOKEN: Final[bytes] = b"\n"


@dataclass(frozen=True)
class CheckpointLine:
    """A checkpoint notification parsed from subject output."""
    name: Optional[str]  # None for the legacy anonymous form


def format_checkpoint(name: str) -> str:
    """The line a subject writes to announce ``name``."""
    if not name or "\n" in name:
        raise ValueError("Checkpoint name must be a non-empty single line")
    return f"{CHECKPOINT_PREFIX}{name}\n"


def parse_line(line: str) -> Optional[CheckpointLine]:
    """
    Parse one line of subject output.

    Returns:
        CheckpointLine if the line announces a checkpoint, None for
        ordinary output
    """
    text = line.rstrip("\r\n")
    if text.startswith(CHECKPOINT_PREFIX):
        name = text[len(CHECKPOINT_PREFIX):].strip()
        return CheckpointLine(name=name or None)
    if text.strip() == LEGACY_CHECKPOINT_LINE:
        return CheckpointLine(name=None)
    return None
