"""
Memory Snapshot Model
=====================

In-memory representation of a captured address space.

A region's bytes live in a backing buffer that supports ``find`` with
bounds (``bytes``, ``bytearray`` or ``mmap``). Regions loaded from a dump
file all share one ``mmap`` of that file and only remember their offset
into it, so multi-gigabyte dumps are never copied into the heap.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Final, Iterator, Optional


class RegionClass(Enum):
    """What kind of mapping a region came from."""
    HEAP = "heap"
    STACK = "stack"
    ANONYMOUS = "anonymous"
    FILE_WRITABLE = "file-writable"
    FILE_READONLY = "file-readonly"
    CODE = "code"
    SPECIAL = "special"
    INACCESSIBLE = "inaccessible"


# Heap, stacks and anonymous mappings (allocator arenas, mmap'd secret
# storage). Everything else is excluded only to keep dumps small, and a case
# can opt any class back in.
DEFAULT_REGION_SCOPE: Final[frozenset[RegionClass]] = frozenset({
    RegionClass.HEAP,
    RegionClass.STACK,
    RegionClass.ANONYMOUS,
})


@dataclass(frozen=True)
class Region:
    """
    One contiguous range of the subject's address space.

    Attributes:
        start: Base virtual address
        size: Length in bytes
        data: Backing buffer holding the bytes
        offset: Offset of this region's first byte inside ``data``
        perms: Permission string as in /proc/<pid>/maps (e.g. "rw-p")
        path: Backing file or pseudo-path ("[heap]"), empty if anonymous
        region_class: Classification used for scoping
    """
    start: int
    size: int
    data: Any = field(repr=False, compare=False)
    offset: int = 0
    perms: str = "rw-p"
    path: str = ""
    region_class: RegionClass = RegionClass.ANONYMOUS

    def __post_init__(self) -> None:
        if self.start < 0 or self.size < 0:
            raise ValueError("Region start and size must be non-negative")

    @property
    def end(self) -> int:
        """First address past the region."""
        return self.start + self.size

    def find(self, pattern: bytes, lo: int = 0, hi: Optional[int] = None) -> int:
        """
        Find ``pattern`` inside ``[lo, hi)`` of this region.

        Returns the offset relative to the region start, or -1.
        """
        if hi is None or hi > self.size:
            hi = self.size
        index = self.data.find(pattern, self.offset + lo, self.offset + hi)
        if index < 0:
            return -1
        return index - self.offset

    def read(self, lo: int = 0, hi: Optional[int] = None) -> bytes:
        """Copy ``[lo, hi)`` of this region out as bytes."""
        if hi is None or hi > self.size:
            hi = self.size
        lo = max(lo, 0)
        return bytes(self.data[self.offset + lo:self.offset + hi])

    def slice(self, lo: int, hi: int) -> Region:
        """A view of ``[lo, hi)`` sharing the same backing buffer."""
        return Region(
            start=self.start + lo,
            size=hi - lo,
            data=self.data,
            offset=self.offset + lo,
            perms=self.perms,
            path=self.path,
            region_class=self.region_class,
        )


@dataclass
class MemorySnapshot:
    """
    A captured image of one subject process at one checkpoint.

    Use as a context manager (or call close()) when the snapshot was loaded
    from a file, to release the file mapping.
    """
    case: str
    checkpoint: str
    regions: list[Region]
    pid: Optional[int] = None
    captured_at: str = ""
    source: Optional[Path] = None
    _closer: Optional[Callable[[], None]] = field(default=None, repr=False, compare=False)

    @property
    def total_bytes(self) -> int:
        return sum(region.size for region in self.regions)

    def __iter__(self) -> Iterator[Region]:
        return iter(self.regions)

    def __len__(self) -> int:
        return len(self.regions)

    def close(self) -> None:
        closer, self._closer = self._closer, None
        if closer is not None:
            # Regions point into the mapping being closed
            self.regions = []
            closer()

    def __enter__(self) -> MemorySnapshot:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
