"""
Memory Scanner
==============

Exact byte-pattern search over a memory snapshot.

Search Policy:
- Matching is byte-for-byte; no normalization of any kind.
- Duplicate and overlapping regions are coalesced first, so an address
  is searched once and no occurrence is counted twice.
- An occurrence split across two address-contiguous regions is a match.
- Bytes from regions that are not contiguous are never joined: a gap in
  the address space breaks any candidate match.

Each span is searched in place with ``bytes.find`` / ``mmap.find``,
CPython's skip-table search (Horspool with a bloom-filter skip, and the
two-way algorithm for long needles), so dumps are never copied into the
heap. At every boundary inside a run only a window of ``len(pattern) - 1``
bytes on each side is copied; an occurrence is attributed to the first
boundary it crosses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from memory_testing.core.logging import get_secure_logger
from memory_testing.scan.coalesce import Run, Span, coalesce_regions
from memory_testing.snapshot.fileformat import load_snapshot
from memory_testing.snapshot.model import MemorySnapshot, Region


logger = get_secure_logger(__name__)


@dataclass(frozen=True)
class Occurrence:
    """
    Where a pattern was found.

    Attributes:
        address: Virtual address of the first matching byte
        region_index: Snapshot region holding the first byte
        offset: Offset of the first byte inside that region
        spans_boundary: True if the match continues into the next region
    """
    address: int
    region_index: int
    offset: int
    spans_boundary: bool = False

    def to_dict(self) -> dict:
        return {
            "address": f"{self.address:#x}",
            "region_index": self.region_index,
            "offset": self.offset,
            "spans_boundary": self.spans_boundary,
        }


@dataclass(frozen=True)
class ScanResult:
    """Outcome of scanning one snapshot for one pattern."""
    case: str
    checkpoint: str
    found: bool
    occurrences: tuple[Occurrence, ...] = field(default=())
    bytes_scanned: int = 0

    @property
    def count(self) -> int:
        return len(self.occurrences)


def find_occurrences(regions: Sequence[Region], pattern: bytes) -> tuple[Occurrence, ...]:
    """
    Find every occurrence of ``pattern`` in a set of regions.

    Overlapping occurrences are all reported.

    Raises:
        ValueError: If the pattern is empty
    """
    if not pattern:
        raise ValueError("Pattern cannot be empty")

    found: list[Occurrence] = []
    for run in coalesce_regions(regions):
        for span in run.spans:
            found.extend(_search_span(span, pattern))
        if len(pattern) > 1:
            for k in range(1, len(run.spans)):
                found.extend(_search_boundary(run, k, pattern))

    found.sort(key=lambda occurrence: occurrence.address)
    return tuple(found)


def _search_span(span: Span, pattern: bytes) -> list[Occurrence]:
    hits = []
    position = span.view.find(pattern)
    while position >= 0:
        hits.append(Occurrence(
            address=span.start + position,
            region_index=span.region_index,
            offset=span.region_offset + position,
        ))
        position = span.view.find(pattern, position + 1)
    return hits


def _search_boundary(run: Run, k: int, pattern: bytes) -> list[Occurrence]:
    """Matches that start in span k-1 and end in span k or later."""
    reach = len(pattern) - 1
    left_span = run.spans[k - 1]
    left = left_span.view.read(max(0, left_span.size - reach))

    right = bytearray()
    for span in run.spans[k:]:
        right += span.view.read(0, reach - len(right))
        if len(right) >= reach:
            break

    window = left + bytes(right)
    window_start = left_span.end - len(left)

    hits = []
    position = window.find(pattern)
    # Starting at or past the boundary means the match lies in later spans
    while 0 <= position < len(left):
        address = window_start + position
        hits.append(Occurrence(
            address=address,
            region_index=left_span.region_index,
            offset=left_span.region_offset + (address - left_span.start),
            spans_boundary=True,
        ))
        position = window.find(pattern, position + 1)
    return hits


def scan(snapshot: MemorySnapshot, pattern: bytes) -> ScanResult:
    """
    Scan a snapshot for a pattern.

    Returns:
        ScanResult with every occurrence; ``found`` is the only part the
        verdict depends on
    """
    occurrences = find_occurrences(snapshot.regions, pattern)
    result = ScanResult(
        case=snapshot.case,
        checkpoint=snapshot.checkpoint,
        found=bool(occurrences),
        occurrences=occurrences,
        bytes_scanned=snapshot.total_bytes,
    )
    logger.debug(
        "Scanned %s/%s: %d region(s), %d bytes, %d occurrence(s)",
        snapshot.case, snapshot.checkpoint, len(snapshot.regions),
        result.bytes_scanned, result.count,
    )
    return result


def scan_file(
    path: str | Path,
    pattern: bytes,
    case: Optional[str] = None,
    checkpoint: Optional[str] = None,
) -> ScanResult:
    """
    Load a dump file and scan it.

    ``case`` and ``checkpoint`` override the names stored in (or inferred
    for) the dump.

    Raises:
        SnapshotFormatError: If the dump cannot be read
    """
    with load_snapshot(path) as snapshot:
        if case is not None:
            snapshot.case = case
        if checkpoint is not None:
            snapshot.checkpoint = checkpoint
        return scan(snapshot, pattern)
