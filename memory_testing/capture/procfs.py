"""
procfs Memory Access
====================

Linux ``/proc/<pid>/maps`` parsing, region classification, and raw reads
from ``/proc/<pid>/mem``.

Reading another process's ``mem`` file needs ptrace-level access to it
(same user and, under Yama, being its parent, which the harness is).
"""

from __future__ import annotations

import errno
import os
import re
from dataclasses import dataclass
from typing import Final, Iterator

from memory_testing.capture.errors import CaptureIncomplete
from memory_testing.snapshot.model import RegionClass


_MAPS_LINE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<start>[0-9a-f]+)-(?P<end>[0-9a-f]+)\s+"
    r"(?P<perms>[r-][w-][x-][ps])\s+"
    r"(?P<offset>[0-9a-f]+)\s+"
    r"(?P<dev>[0-9a-f]+:[0-9a-f]+)\s+"
    r"(?P<inode>\d+)"
    r"(?:\s+(?P<path>.*))?$"
)

# Shared or memfd mappings show up with a path but hold anonymous memory
_ANONYMOUS_FILE_PREFIXES: Final[tuple[str, ...]] = ("/dev/zero", "/memfd:", "/SYSV")


@dataclass(frozen=True)
class MapEntry:
    """One line of /proc/<pid>/maps."""
    start: int
    end: int
    perms: str
    offset: int
    dev: str
    inode: int
    path: str

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def readable(self) -> bool:
        return self.perms[0] == "r"


def parse_maps(text: str) -> list[MapEntry]:
    """
    Parse the contents of a maps file.

    Raises:
        ValueError: On a line that is not in maps format
    """
    entries = []
    for line in text.splitlines():
        if not line.strip():
            continue
        match = _MAPS_LINE.match(line)
        if match is None:
            raise ValueError(f"Unrecognized maps line: {line!r}")
        entries.append(MapEntry(
            start=int(match["start"], 16),
            end=int(match["end"], 16),
            perms=match["perms"],
            offset=int(match["offset"], 16),
            dev=match["dev"],
            inode=int(match["inode"]),
            path=(match["path"] or "").strip(),
        ))
    return entries


def read_maps(pid: int) -> list[MapEntry]:
    """Read and parse /proc/<pid>/maps."""
    with open(f"/proc/{pid}/maps", "r", encoding="utf-8", errors="replace") as handle:
        return parse_maps(handle.read())


def classify(entry: MapEntry) -> RegionClass:
    """Assign a RegionClass to a mapping."""
    path = entry.path

    if path == "[heap]":
        return RegionClass.HEAP if entry.readable else RegionClass.INACCESSIBLE
    if path == "[stack]" or path.startswith("[stack:"):
        return RegionClass.STACK if entry.readable else RegionClass.INACCESSIBLE
    if path.startswith("[") and not path.startswith("[anon"):
        # [vdso], [vvar], [vsyscall], [uprobes]
        return RegionClass.SPECIAL

    if not entry.readable:
        return RegionClass.INACCESSIBLE

    if not path or path.startswith("[anon") or path.startswith(_ANONYMOUS_FILE_PREFIXES):
        return RegionClass.ANONYMOUS

    if "x" in entry.perms:
        return RegionClass.CODE
    if "w" in entry.perms:
        return RegionClass.FILE_WRITABLE
    return RegionClass.FILE_READONLY


def tracer_pid(pid: int) -> int:
    """The pid tracing ``pid`` per /proc/<pid>/status, 0 if none."""
    with open(f"/proc/{pid}/status", "r", encoding="utf-8") as handle:
        for line in handle:
            if line.startswith("TracerPid:"):
                return int(line.split(":", 1)[1].strip())
    return 0


def open_mem(pid: int) -> int:
    """Open /proc/<pid>/mem read-only and return the descriptor."""
    return os.open(f"/proc/{pid}/mem", os.O_RDONLY | getattr(os, "O_CLOEXEC", 0))


def read_region(fd: int, entry: MapEntry, chunk_size: int) -> Iterator[bytes]:
    """
    Yield the bytes of a mapping in chunks.

    Raises:
        CaptureIncomplete: On a read error or a short read; the exception
            carries the failing address
    """
    address = entry.start
    while address < entry.end:
        want = min(chunk_size, entry.end - address)
        try:
            data = os.pread(fd, want, address)
        except OSError as e:
            reason = errno.errorcode.get(e.errno, str(e.errno))
            raise CaptureIncomplete(
                f"Cannot read {entry.path or 'anonymous'} mapping at {address:#x} ({reason})",
                address=address,
            ) from e
        except OverflowError as e:
            # [vsyscall] sits above the largest signed file offset
            raise CaptureIncomplete(
                f"Mapping at {address:#x} is beyond the readable offset range",
                address=address,
            ) from e
        if not data:
            raise CaptureIncomplete(
                f"Mapping {entry.start:#x}-{entry.end:#x} vanished at {address:#x}",
                address=address,
            )
        yield data
        address += len(data)
