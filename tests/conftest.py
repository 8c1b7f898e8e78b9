"""Shared fixtures for the harness test suite."""

from __future__ import annotations

import json
import os
import struct
import sys
from pathlib import Path

import pytest

from memory_testing.core.config import HarnessConfig


SECRET_HEX = "8f3a5c1e9b2d74f0a6c8e1b3d5f70912"
SECRET = bytes.fromhex(SECRET_HEX)

SUBJECT_COMMAND = [sys.executable, "-m", "memory_testing.subject"]


def _can_read_child_memory() -> bool:
    if not sys.platform.startswith("linux") or not os.path.exists("/proc/self/mem"):
        return False
    try:
        with open("/proc/sys/kernel/yama/ptrace_scope") as handle:
            scope = int(handle.read().strip())
    except (OSError, ValueError):
        return True
    # 0 and 1 let a parent read its children; 2 needs CAP_SYS_PTRACE; 3 forbids it
    return scope <= 1 or (scope == 2 and os.geteuid() == 0)


requires_procfs = pytest.mark.skipif(
    not _can_read_child_memory(),
    reason="needs Linux /proc and ptrace access to child processes",
)


def make_cases_document(*cases: dict) -> dict:
    return {"cases": list(cases)}


def two_checkpoint_case(name: str = "simple-zeroize", secret_hex: str = SECRET_HEX) -> dict:
    return {
        "name": name,
        "secret": {"hex": secret_hex},
        "checkpoints": [
            {"name": "after-construction", "expectation": "present"},
            {"name": "after-drop", "expectation": "absent"},
        ],
    }


@pytest.fixture
def write_cases(tmp_path):
    """Write a cases document and return its path."""

    def _write(document, name: str = "cases.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(document), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def cases_file(write_cases) -> Path:
    return write_cases(make_cases_document(two_checkpoint_case()))


@pytest.fixture
def harness_config(cases_file, monkeypatch) -> HarnessConfig:
    for key in list(os.environ):
        if key.startswith("MEMORY_TESTING_"):
            monkeypatch.delenv(key)
    return HarnessConfig.load().with_overrides(
        paths={"cases_file": cases_file},
        capture={"checkpoint_timeout_seconds": 10.0, "exit_timeout_seconds": 5.0},
    )


# -- ELF core synthesis -------------------------------------------------------

_PT_LOAD = 1
_PT_NOTE = 4
_NT_FILE = 0x46494C45


def build_core(segments, files=(), phnum_override=None) -> bytes:
    """
    Build a little-endian ELF64 core.

    Args:
        segments: (vaddr, flags, data, memsz) tuples; memsz larger than
            len(data) marks bytes that were not written
        files: (start, end, path) tuples for the NT_FILE note
    """
    ehdr_size, phdr_size = 64, 56
    phnum = len(segments) + (1 if files else 0)

    note = b""
    if files:
        desc = struct.pack("<QQ", len(files), 4096)
        for start, end, _path in files:
            desc += struct.pack("<QQQ", start, end, 0)
        desc += b"".join(path.encode() + b"\x00" for _s, _e, path in files)
        desc += b"\x00" * (-len(desc) % 4)
        name = b"CORE\x00"
        note = struct.pack("<III", len(name), len(desc), _NT_FILE) + name + b"\x00" * (-len(name) % 4) + desc

    offset = ehdr_size + phnum * phdr_size
    phdrs = b""
    body = b""
    if files:
        phdrs += struct.pack("<IIQQQQQQ", _PT_NOTE, 0, offset, 0, 0, len(note), 0, 4)
        body += note
        offset += len(note)
    for vaddr, flags, data, memsz in segments:
        phdrs += struct.pack("<IIQQQQQQ", _PT_LOAD, flags, offset, vaddr, 0, len(data), memsz, 4096)
        body += data
        offset += len(data)

    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\x00" * 8
    header = ident + struct.pack(
        "<HHIQQQIHHHHHH",
        4, 62, 1, 0, ehdr_size, 0, 0, ehdr_size, phdr_size,
        phnum if phnum_override is None else phnum_override, 0, 0, 0,
    )
    return header + phdrs + body
