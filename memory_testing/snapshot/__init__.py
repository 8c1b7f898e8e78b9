"""
Snapshot module - Captured address spaces and their on-disk formats.
"""

from memory_testing.snapshot.fileformat import (
    SnapshotExists,
    SnapshotFormatError,
    SnapshotWriter,
    load_snapshot,
)
from memory_testing.snapshot.model import (
    DEFAULT_REGION_SCOPE,
    MemorySnapshot,
    Region,
    RegionClass,
)

__all__ = [
    "SnapshotExists",
    "SnapshotFormatError",
    "SnapshotWriter",
    "load_snapshot",
    "DEFAULT_REGION_SCOPE",
    "MemorySnapshot",
    "Region",
    "RegionClass",
]
