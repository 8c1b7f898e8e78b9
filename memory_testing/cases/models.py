"""
Test Case Model
===============

Immutable descriptors for the declarative zeroization test cases.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from memory_testing.snapshot.model import DEFAULT_REGION_SCOPE, RegionClass


class Expectation(Enum):
    """What a checkpoint's scan must report."""
    PRESENT = "present"
    ABSENT = "absent"

    def satisfied_by(self, found: bool) -> bool:
        return bool(found) == (self is Expectation.PRESENT)


@dataclass(frozen=True, slots=True)
class CheckpointSpec:
    """A named checkpoint and what the scan must report there."""
    name: str
    expectation: Expectation


@dataclass(frozen=True, slots=True)
class TestCase:
    """
    One declared test case.

    The secret is the exact byte pattern to search for. It is excluded
    from repr so a case can be logged or shown in a traceback safely.
    """
    __test__ = False  # not a pytest class

    name: str
    secret: bytes = field(repr=False)
    checkpoints: tuple[CheckpointSpec, ...]
    regions: frozenset[RegionClass] = DEFAULT_REGION_SCOPE

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Case name cannot be empty")
        if not self.secret:
            raise ValueError("Secret pattern cannot be empty")
        if not self.checkpoints:
            raise ValueError("A case needs at least one checkpoint")
        names = [checkpoint.name for checkpoint in self.checkpoints]
        if len(set(names)) != len(names):
            raise ValueError("Checkpoint names must be unique within a case")

    @property
    def checkpoint_names(self) -> tuple[str, ...]:
        return tuple(checkpoint.name for checkpoint in self.checkpoints)

    def checkpoint(self, name: str) -> Optional[CheckpointSpec]:
        for checkpoint in self.checkpoints:
            if checkpoint.name == name:
                return checkpoint
        return None
