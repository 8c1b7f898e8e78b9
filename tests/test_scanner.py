"""Tests for region coalescing and the memory scanner."""

from __future__ import annotations

import pytest

from conftest import SECRET
from memory_testing.scan import coalesce_regions, find_occurrences, scan, scan_file
from memory_testing.snapshot.fileformat import SnapshotWriter
from memory_testing.snapshot.model import MemorySnapshot, Region, RegionClass


def region(start: int, data: bytes, **kwargs) -> Region:
    return Region(start=start, size=len(data), data=data, **kwargs)


class TestCoalesce:

    def test_sorted_into_contiguous_runs(self):
        regions = [
            region(0x3000, b"c" * 16),
            region(0x1000, b"a" * 0x1000),
            region(0x2000, b"b" * 16),
        ]
        runs = coalesce_regions(regions)
        assert [(run.start, run.end) for run in runs] == [(0x1000, 0x2010), (0x3000, 0x3010)]
        assert [span.region_index for span in runs[0].spans] == [1, 2]

    def test_contained_and_duplicate_regions_dropped(self):
        outer = region(0x1000, bytes(64))
        runs = coalesce_regions([outer, region(0x1000, bytes(64)), region(0x1010, bytes(8))])
        assert len(runs) == 1
        assert len(runs[0].spans) == 1
        assert runs[0].size == 64

    def test_overlap_is_trimmed(self):
        first = region(0x1000, b"A" * 32)
        second = region(0x1010, b"B" * 32)
        runs = coalesce_regions([second, first])
        spans = runs[0].spans
        assert [(span.start, span.end) for span in spans] == [(0x1000, 0x1020), (0x1020, 0x1030)]
        assert spans[1].region_offset == 16
        assert spans[1].view.read() == b"B" * 16

    def test_empty_regions_ignored(self):
        assert coalesce_regions([region(0x1000, b"")]) == []


class TestFindOccurrences:

    def test_match_inside_region(self):
        data = b"\x00" * 100 + SECRET + b"\x00" * 10
        [hit] = find_occurrences([region(0x4000, data)], SECRET)
        assert hit.address == 0x4000 + 100
        assert hit.region_index == 0
        assert hit.offset == 100
        assert not hit.spans_boundary

    def test_every_occurrence_reported(self):
        data = SECRET + b"--" + SECRET
        hits = find_occurrences([region(0, data)], SECRET)
        assert [hit.offset for hit in hits] == [0, len(SECRET) + 2]

    def test_overlapping_occurrences(self):
        assert len(find_occurrences([region(0, b"aaaa")], b"aaa")) == 2

    def test_match_across_contiguous_regions(self):
        left = region(0x1000, b"\x00" * 8 + SECRET[:5])
        right = region(left.end, SECRET[5:] + b"\x00" * 8)
        [hit] = find_occurrences([left, right], SECRET)
        assert hit.address == 0x1008
        assert hit.spans_boundary
        assert hit.region_index == 0
        assert hit.offset == 8

    def test_no_match_across_gap(self):
        left = region(0x1000, b"\x00" * 8 + SECRET[:5])
        right = region(left.end + 1, SECRET[5:] + b"\x00" * 8)
        assert find_occurrences([left, right], SECRET) == ()

    def test_match_across_three_regions(self):
        left = region(0x1000, SECRET[:3])
        middle = region(0x1003, SECRET[3:5])
        right = region(0x1005, SECRET[5:] + b"tail")
        [hit] = find_occurrences([right, middle, left], SECRET)
        assert hit.address == 0x1000
        assert hit.spans_boundary
        assert hit.region_index == 2

    def test_duplicated_region_counted_once(self):
        data = b"xx" + SECRET + b"yy"
        hits = find_occurrences([region(0x1000, data), region(0x1000, data)], SECRET)
        assert len(hits) == 1

    def test_match_in_overlap_counted_once(self):
        data = b"\x00" * 16 + SECRET + b"\x00" * 16
        first = region(0x1000, data)
        second = Region(start=0x1008, size=len(data) - 8, data=data, offset=8)
        assert len(find_occurrences([first, second], SECRET)) == 1

    def test_empty_pattern_rejected(self):
        with pytest.raises(ValueError):
            find_occurrences([region(0, b"abc")], b"")

    def test_single_byte_pattern(self):
        left = region(0, b"ab")
        right = region(2, b"ca")
        assert [hit.address for hit in find_occurrences([left, right], b"a")] == [0, 3]

    def test_exact_bytes_only(self):
        assert find_occurrences([region(0, b"ABC")], b"abc") == ()


class TestScan:

    def test_scan_snapshot(self):
        snapshot = MemorySnapshot(
            case="c",
            checkpoint="cp",
            regions=[region(0x1000, b"\x00" * 32 + SECRET)],
        )
        result = scan(snapshot, SECRET)
        assert result.found
        assert result.count == 1
        assert result.case == "c"
        assert result.checkpoint == "cp"
        assert result.bytes_scanned == 32 + len(SECRET)

    def test_scan_file_is_idempotent(self, tmp_path):
        path = tmp_path / "case" / "cp.dump"
        with SnapshotWriter(path, case="case", checkpoint="cp", pid=1) as writer:
            writer.add_region(0x1000, "rw-p", "[heap]", RegionClass.HEAP, [b"\x00" * 4090, SECRET[:6]])
            writer.add_region(0x1000 + 4096, "rw-p", "", RegionClass.ANONYMOUS, [SECRET[6:], SECRET])

        first = scan_file(path, SECRET)
        second = scan_file(path, SECRET)
        assert first == second
        assert first.count == 2
        assert first.occurrences[0].spans_boundary

    def test_scan_file_overrides_names(self, tmp_path):
        path = tmp_path / "dump"
        with SnapshotWriter(path, case="stored", checkpoint="stored") as writer:
            writer.add_region(0, "rw-p", "", RegionClass.ANONYMOUS, [b"nothing here"])
        result = scan_file(path, SECRET, case="other", checkpoint="cp")
        assert (result.case, result.checkpoint, result.found) == ("other", "cp", False)
