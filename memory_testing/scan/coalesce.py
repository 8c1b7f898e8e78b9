"""
Region Coalescing
=================

Normalizes the region list of a snapshot before pattern search.

Capturers may report the same range twice, or ranges that overlap
(e.g. an ELF core and a maps listing disagreeing on a boundary). The
scanner needs each address exactly once, and needs to know which regions
touch so a secret split across two adjacent mappings is still found.

Algorithm:
    1. Order regions by start address (longest first on ties).
    2. Drop regions wholly covered by what came before; trim the covered
       head off partially overlapping ones. Trimming makes a view into the
       same backing buffer, nothing is copied.
    3. Group the remaining spans into runs of address-contiguous spans.

Spans within a run are contiguous; distinct runs are separated by at
least one unmapped (or uncaptured) byte.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from memory_testing.snapshot.model import Region


@dataclass(frozen=True)
class Span:
    """
    A non-overlapping piece of one captured region.

    Attributes:
        region_index: Index of the source region in the snapshot
        region_offset: Where this span begins inside the source region
        view: The bytes of the span (a slice of the source region)
    """
    region_index: int
    region_offset: int
    view: Region

    @property
    def start(self) -> int:
        return self.view.start

    @property
    def end(self) -> int:
        return self.view.end

    @property
    def size(self) -> int:
        return self.view.size


@dataclass
class Run:
    """Address-contiguous spans, in address order."""
    spans: list[Span] = field(default_factory=list)

    @property
    def start(self) -> int:
        return self.spans[0].start

    @property
    def end(self) -> int:
        return self.spans[-1].end

    @property
    def size(self) -> int:
        return self.end - self.start


def coalesce_regions(regions: Sequence[Region]) -> list[Run]:
    """
    Deduplicate, trim and group regions into contiguous runs.

    Args:
        regions: Regions in any order, possibly overlapping

    Returns:
        Runs ordered by address; together they cover every captured
        address exactly once
    """
    order = sorted(
        range(len(regions)),
        key=lambda i: (regions[i].start, -regions[i].size, i),
    )

    runs: list[Run] = []
    covered_end = -1

    for index in order:
        region = regions[index]
        if region.size == 0 or region.end <= covered_end:
            continue

        lo = covered_end - region.start if region.start < covered_end else 0
        span = Span(
            region_index=index,
            region_offset=lo,
            view=region.slice(lo, region.size) if lo else region,
        )

        if runs and runs[-1].end == span.start:
            runs[-1].spans.append(span)
        else:
            runs.append(Run(spans=[span]))

        covered_end = region.end

    return runs
