"""
ELF Core Reader
===============

Reads ELF core files (as written by gdb's ``gcore`` or the kernel) as
memory snapshots.

Only the parts needed to recover the address space are parsed:
- the ELF header (class, byte order, program header table)
- PT_LOAD segments: one region per segment with file-backed bytes
- the NT_FILE note, to tell file-backed mappings from anonymous ones

Segments whose bytes were not written to the core (``p_filesz == 0``)
are reported by ``omitted_segments`` rather than turned into regions.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Optional

from memory_testing.snapshot.fileformat import SnapshotFormatError
from memory_testing.snapshot.model import MemorySnapshot, Region, RegionClass


ELFCLASS32: Final[int] = 1
ELFCLASS64: Final[int] = 2
ELFDATA2LSB: Final[int] = 1
ELFDATA2MSB: Final[int] = 2
ET_CORE: Final[int] = 4

PT_LOAD: Final[int] = 1
PT_NOTE: Final[int] = 4
PN_XNUM: Final[int] = 0xFFFF

PF_X: Final[int] = 0x1
PF_W: Final[int] = 0x2
PF_R: Final[int] = 0x4

NT_FILE: Final[int] = 0x46494C45

EI_NIDENT: Final[int] = 16


@dataclass(frozen=True)
class _Layout:
    """struct formats for one ELF class."""
    word: str
    ehdr: str
    phdr: str
    shdr_info_offset: int

    @property
    def word_size(self) -> int:
        return struct.calcsize(self.word)


_LAYOUTS: Final[dict[int, _Layout]] = {
    ELFCLASS64: _Layout(word="Q", ehdr="HHIQQQIHHHHHH", phdr="IIQQQQQQ", shdr_info_offset=44),
    ELFCLASS32: _Layout(word="I", ehdr="HHIIIIIHHHHHH", phdr="IIIIIIII", shdr_info_offset=28),
}


@dataclass(frozen=True)
class Segment:
    """A PT_LOAD program header."""
    vaddr: int
    offset: int
    filesz: int
    memsz: int
    flags: int

    @property
    def perms(self) -> str:
        return (
            ("r" if self.flags & PF_R else "-")
            + ("w" if self.flags & PF_W else "-")
            + ("x" if self.flags & PF_X else "-")
            + "p"
        )


@dataclass(frozen=True)
class FileMapping:
    start: int
    end: int
    path: str


class CoreFile:
    """Parsed view of an ELF core image held in a bytes-like buffer."""

    def __init__(self, data: Any, name: str = "<core>") -> None:
        self._data = data
        self._name = name

        if len(data) < EI_NIDENT or data[:4] != b"\x7fELF":
            raise SnapshotFormatError(f"{name} is not an ELF file")

        elf_class, byte_order = data[4], data[5]
        if elf_class not in _LAYOUTS:
            raise SnapshotFormatError(f"{name} has unsupported ELF class {elf_class}")
        if byte_order not in (ELFDATA2LSB, ELFDATA2MSB):
            raise SnapshotFormatError(f"{name} has unsupported byte order {byte_order}")

        self._layout = _LAYOUTS[elf_class]
        self._endian = "<" if byte_order == ELFDATA2LSB else ">"

        header = self._unpack(self._layout.ehdr, EI_NIDENT)
        (e_type, _machine, _version, _entry, e_phoff, e_shoff, _flags,
         _ehsize, e_phentsize, e_phnum, _shentsize, _shnum, _shstrndx) = header

        if e_type != ET_CORE:
            raise SnapshotFormatError(f"{name} is not a core file (e_type={e_type})")

        if e_phnum == PN_XNUM:
            # Real count lives in sh_info of section header 0
            e_phnum = self._unpack("I", e_shoff + self._layout.shdr_info_offset)[0]

        phdr_size = struct.calcsize(self._endian + self._layout.phdr)
        if e_phentsize != phdr_size:
            raise SnapshotFormatError(f"{name} has unexpected program header size {e_phentsize}")

        self.segments: list[Segment] = []
        self.file_mappings: list[FileMapping] = []
        for index in range(e_phnum):
            self._read_phdr(e_phoff + index * phdr_size)

    def _unpack(self, fmt: str, offset: int) -> tuple:
        fmt = self._endian + fmt
        end = offset + struct.calcsize(fmt)
        if offset < 0 or end > len(self._data):
            raise SnapshotFormatError(f"{self._name} is truncated at offset {offset:#x}")
        return struct.unpack(fmt, self._data[offset:end])

    def _read_phdr(self, offset: int) -> None:
        fields = self._unpack(self._layout.phdr, offset)
        if self._layout is _LAYOUTS[ELFCLASS64]:
            p_type, p_flags, p_offset, p_vaddr, _paddr, p_filesz, p_memsz, _align = fields
        else:
            p_type, p_offset, p_vaddr, _paddr, p_filesz, p_memsz, p_flags, _align = fields

        if p_type == PT_LOAD:
            if p_offset + p_filesz > len(self._data):
                raise SnapshotFormatError(
                    f"{self._name}: segment at {p_vaddr:#x} extends past end of file"
                )
            self.segments.append(Segment(p_vaddr, p_offset, p_filesz, p_memsz, p_flags))
        elif p_type == PT_NOTE:
            self._read_notes(p_offset, p_filesz)

    def _read_notes(self, offset: int, size: int) -> None:
        end = offset + size
        while offset + 12 <= end:
            namesz, descsz, note_type = self._unpack("III", offset)
            name_start = offset + 12
            desc_start = name_start + _align4(namesz)
            desc_end = desc_start + descsz
            if desc_end > end:
                raise SnapshotFormatError(f"{self._name} has a truncated note")
            if note_type == NT_FILE:
                self._read_nt_file(desc_start, descsz)
            offset = desc_start + _align4(descsz)

    def _read_nt_file(self, offset: int, size: int) -> None:
        word = self._layout.word
        word_size = self._layout.word_size
        count, _page_size = self._unpack(word * 2, offset)
        table = offset + 2 * word_size
        names_start = table + count * 3 * word_size
        if names_start > offset + size:
            raise SnapshotFormatError(f"{self._name} has a corrupt NT_FILE note")

        names = bytes(self._data[names_start:offset + size]).split(b"\x00")
        for index in range(count):
            start, end, _file_ofs = self._unpack(word * 3, table + index * 3 * word_size)
            path = names[index].decode("utf-8", "replace") if index < len(names) else ""
            self.file_mappings.append(FileMapping(start, end, path))

    def mapping_for(self, address: int) -> Optional[FileMapping]:
        for mapping in self.file_mappings:
            if mapping.start <= address < mapping.end:
                return mapping
        return None

    def classify(self, segment: Segment) -> tuple[RegionClass, str]:
        if not segment.flags & PF_R:
            return RegionClass.INACCESSIBLE, ""
        mapping = self.mapping_for(segment.vaddr)
        if mapping is None:
            return RegionClass.ANONYMOUS, ""
        if segment.flags & PF_X:
            return RegionClass.CODE, mapping.path
        if segment.flags & PF_W:
            return RegionClass.FILE_WRITABLE, mapping.path
        return RegionClass.FILE_READONLY, mapping.path

    def omitted_segments(self) -> list[tuple[Segment, RegionClass]]:
        """Segments present in memory but not (fully) written to the core."""
        return [
            (segment, self.classify(segment)[0])
            for segment in self.segments
            if segment.filesz < segment.memsz
        ]

    def regions(self) -> list[Region]:
        regions = []
        for segment in self.segments:
            if segment.filesz == 0:
                continue
            region_class, path = self.classify(segment)
            regions.append(Region(
                start=segment.vaddr,
                size=segment.filesz,
                data=self._data,
                offset=segment.offset,
                perms=segment.perms,
                path=path,
                region_class=region_class,
            ))
        return regions


def _align4(value: int) -> int:
    return (value + 3) & ~3


def parse_core(path: Path, data: Any) -> MemorySnapshot:
    """
    Build a snapshot from an ELF core image.

    Cores carry no case metadata; the dump layout
    ``<output>/<case>/<checkpoint>.dump`` supplies it.
    """
    core = CoreFile(data, name=str(path))
    return MemorySnapshot(
        case=path.parent.name,
        checkpoint=path.stem,
        regions=core.regions(),
    )
