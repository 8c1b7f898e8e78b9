"""
Dump File Format
================

Native on-disk format for memory snapshots.

File Format:
    HEADER (32 bytes, big-endian):
        - MAGIC: 8 bytes  (b"MTSNAP\\x00\\x00")
        - VERSION: 2 bytes
        - FLAGS: 2 bytes (reserved, zero)
        - RESERVED: 4 bytes
        - INDEX_OFFSET: 8 bytes
        - INDEX_LENGTH: 8 bytes
    REGION DATA: raw bytes of every region, back to back
    INDEX: UTF-8 JSON describing the snapshot and each region's
           address, size, permissions, path, class and data offset

The index is written last so region bytes can be streamed straight from
the subject to disk; the header is patched once the index position is
known. A file whose header still has a zero index offset was never
finished and is rejected by the reader.

Dump files are created with exclusive-create mode: a name is written
once, and an existing file is never overwritten.
"""

from __future__ import annotations

import json
import mmap
import os
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Final, Iterable, Optional

from memory_testing.core.errors import HarnessError
from memory_testing.snapshot.model import MemorySnapshot, Region, RegionClass


MAGIC_BYTES: Final[bytes] = b"MTSNAP\x00\x00"
FILE_FORMAT_VERSION: Final[int] = 1
HEADER_FORMAT: Final[str] = ">8sHHIQQ"
HEADER_SIZE: Final[int] = struct.calcsize(HEADER_FORMAT)  # 32

ELF_MAGIC: Final[bytes] = b"\x7fELF"

MAX_INDEX_SIZE: Final[int] = 64 * 1024 * 1024


class SnapshotFormatError(HarnessError):
    """Raised when a dump file is unreadable or corrupt."""
    pass


class SnapshotExists(HarnessError):
    """Raised when a dump file name is already taken."""
    pass


@dataclass
class _IndexEntry:
    start: int
    size: int
    offset: int
    perms: str
    path: str
    region_class: str

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "size": self.size,
            "offset": self.offset,
            "perms": self.perms,
            "path": self.path,
            "class": self.region_class,
        }


class SnapshotWriter:
    """
    Streams regions into a new dump file.

    Usage:
        with SnapshotWriter(path, case="c", checkpoint="after-drop", pid=42) as writer:
            writer.add_region(start, perms, path, RegionClass.HEAP, chunks)
        # file is complete here

    If the block raises, the partially written file is removed: a dump
    that is missing regions must never be mistaken for a complete one.
    """

    def __init__(
        self,
        path: Path,
        case: str,
        checkpoint: str,
        pid: Optional[int] = None,
    ) -> None:
        self._path = Path(path)
        self._case = case
        self._checkpoint = checkpoint
        self._pid = pid
        self._entries: list[_IndexEntry] = []
        self._file: Optional[BinaryIO] = None
        self._finished = False
        self.captured_at = datetime.now(timezone.utc).isoformat()

    @property
    def path(self) -> Path:
        return self._path

    def open(self) -> SnapshotWriter:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._file = open(self._path, "xb")
        except FileExistsError as e:
            raise SnapshotExists(
                f"Dump already exists: {self._path}",
                case=self._case,
                checkpoint=self._checkpoint,
            ) from e
        self._file.write(struct.pack(HEADER_FORMAT, MAGIC_BYTES, FILE_FORMAT_VERSION, 0, 0, 0, 0))
        return self

    def add_region(
        self,
        start: int,
        perms: str,
        path: str,
        region_class: RegionClass,
        chunks: Iterable[bytes],
    ) -> int:
        """
        Append one region's bytes.

        Returns:
            Number of bytes written for the region
        """
        if self._file is None or self._finished:
            raise RuntimeError("SnapshotWriter is not open")

        offset = self._file.tell()
        size = 0
        for chunk in chunks:
            self._file.write(chunk)
            size += len(chunk)

        self._entries.append(_IndexEntry(
            start=start,
            size=size,
            offset=offset,
            perms=perms,
            path=path,
            region_class=region_class.value,
        ))
        return size

    def finish(self) -> None:
        """Write the index and patch the header."""
        if self._file is None or self._finished:
            raise RuntimeError("SnapshotWriter is not open")

        index = json.dumps({
            "format": "mtsnap",
            "case": self._case,
            "checkpoint": self._checkpoint,
            "pid": self._pid,
            "captured_at": self.captured_at,
            "regions": [entry.to_dict() for entry in self._entries],
        }, sort_keys=True).encode("utf-8")

        index_offset = self._file.tell()
        self._file.write(index)
        self._file.seek(0)
        self._file.write(struct.pack(
            HEADER_FORMAT, MAGIC_BYTES, FILE_FORMAT_VERSION, 0, 0, index_offset, len(index)
        ))
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()
        self._finished = True

    def abort(self) -> None:
        """Close and delete the unfinished file."""
        if self._file is not None and not self._file.closed:
            self._file.close()
        if not self._finished:
            try:
                self._path.unlink()
            except FileNotFoundError:
                pass

    def __enter__(self) -> SnapshotWriter:
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.finish()
        else:
            self.abort()


def load_snapshot(path: str | Path) -> MemorySnapshot:
    """
    Open a dump file (native format or ELF core) for scanning.

    The file is memory-mapped; close the returned snapshot when done.

    Raises:
        SnapshotFormatError: If the file is not a readable dump
    """
    path = Path(path)
    try:
        handle = open(path, "rb")
    except OSError as e:
        raise SnapshotFormatError(f"Cannot open dump {path}: {e}") from e

    try:
        size = os.fstat(handle.fileno()).st_size
        if size < len(ELF_MAGIC):
            raise SnapshotFormatError(f"Dump {path} is too short")
        data = mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ)
    except (OSError, ValueError) as e:
        handle.close()
        raise SnapshotFormatError(f"Cannot map dump {path}: {e}") from e
    except SnapshotFormatError:
        handle.close()
        raise

    def closer() -> None:
        data.close()
        handle.close()

    try:
        if data[:len(MAGIC_BYTES)] == MAGIC_BYTES:
            snapshot = _parse_native(path, data)
        elif data[:len(ELF_MAGIC)] == ELF_MAGIC:
            # Imported here: elfcore depends on this module's error types
            from memory_testing.snapshot.elfcore import parse_core
            snapshot = parse_core(path, data)
        else:
            raise SnapshotFormatError(f"Unknown dump format: {path}")
    except Exception:
        closer()
        raise

    snapshot.source = path
    snapshot._closer = closer
    return snapshot


def _parse_native(path: Path, data: mmap.mmap) -> MemorySnapshot:
    if len(data) < HEADER_SIZE:
        raise SnapshotFormatError(f"Dump {path} has a truncated header")

    magic, version, _flags, _reserved, index_offset, index_length = struct.unpack(
        HEADER_FORMAT, data[:HEADER_SIZE]
    )
    if magic != MAGIC_BYTES:
        raise SnapshotFormatError(f"Bad magic in {path}")
    if version != FILE_FORMAT_VERSION:
        raise SnapshotFormatError(f"Unsupported dump version {version} in {path}")
    if index_offset == 0:
        raise SnapshotFormatError(f"Dump {path} was never finished")
    if index_length > MAX_INDEX_SIZE or index_offset + index_length > len(data):
        raise SnapshotFormatError(f"Dump {path} has an out-of-range index")

    try:
        index = json.loads(data[index_offset:index_offset + index_length].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SnapshotFormatError(f"Dump {path} has a corrupt index: {e}") from e

    regions = []
    try:
        for entry in index["regions"]:
            start, size, offset = int(entry["start"]), int(entry["size"]), int(entry["offset"])
            if offset < HEADER_SIZE or offset + size > index_offset:
                raise SnapshotFormatError(f"Region at {start:#x} points outside the data section")
            regions.append(Region(
                start=start,
                size=size,
                data=data,
                offset=offset,
                perms=str(entry.get("perms", "")),
                path=str(entry.get("path", "")),
                region_class=RegionClass(entry.get("class", RegionClass.ANONYMOUS.value)),
            ))
        return MemorySnapshot(
            case=str(index["case"]),
            checkpoint=str(index["checkpoint"]),
            regions=regions,
            pid=index.get("pid"),
            captured_at=str(index.get("captured_at", "")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise SnapshotFormatError(f"Dump {path} has an invalid index: {e}") from e
