"""
gdb gcore Backend
=================

Captures a subject with gdb's ``gcore`` command, producing an ELF core.

gdb attaches with ptrace (which stops every thread of the subject),
writes the core and detaches. The core is then checked: any in-scope
segment gdb could not write makes the capture incomplete.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Final

from memory_testing.capture.errors import AttachDenied, CaptureError, CaptureIncomplete
from memory_testing.core.logging import get_secure_logger
from memory_testing.snapshot.elfcore import CoreFile
from memory_testing.snapshot.model import RegionClass


logger = get_secure_logger(__name__)

_READ_FAILURE_MARKERS: Final[tuple[str, ...]] = (
    "Memory read failed",
    "Failed to read",
    "Cannot access memory",
)
_PERMISSION_MARKERS: Final[tuple[str, ...]] = (
    "ptrace: Operation not permitted",
    "Could not attach to process",
)


def find_gdb(gdb_path: str) -> str:
    """
    Resolve the gdb executable.

    Raises:
        CaptureError: If gdb is not installed
    """
    resolved = shutil.which(gdb_path)
    if resolved is None:
        raise CaptureError(f"gdb not found ({gdb_path}); install it or use the procfs backend")
    return resolved


def run_gcore(gdb: str, pid: int, target: Path, timeout: float) -> str:
    """
    Write a core of ``pid`` to ``target``.

    Returns:
        gdb's combined output, for the log

    Raises:
        AttachDenied: If gdb was not allowed to attach
        CaptureIncomplete: If gdb failed or reported unreadable memory
    """
    command = [gdb, "--batch", "--nx", "-p", str(pid), "-ex", f"gcore {target}"]
    try:
        result = subprocess.run(
            command,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise CaptureIncomplete(f"gcore did not finish within {timeout:g}s") from e
    except OSError as e:
        raise CaptureError(f"Cannot run gdb: {e}") from e

    output = (result.stdout or "") + (result.stderr or "")

    if any(marker in output for marker in _PERMISSION_MARKERS):
        raise AttachDenied(f"gdb could not attach to pid {pid}")
    if result.returncode != 0 or not target.exists():
        last = output.strip().splitlines()[-1] if output.strip() else f"exit code {result.returncode}"
        raise CaptureIncomplete(f"gcore failed: {last}")
    if any(marker in output for marker in _READ_FAILURE_MARKERS):
        raise CaptureIncomplete("gcore reported unreadable memory")

    return output


def check_core(core: CoreFile, scope: frozenset[RegionClass]) -> None:
    """
    Fail if gdb left out the bytes of an in-scope segment.

    Raises:
        CaptureIncomplete: Naming the first omitted segment
    """
    for segment, region_class in core.omitted_segments():
        if region_class in scope:
            raise CaptureIncomplete(
                f"Core omits {segment.memsz - segment.filesz} bytes of {region_class.value} "
                f"segment at {segment.vaddr:#x}",
                address=segment.vaddr,
            )
