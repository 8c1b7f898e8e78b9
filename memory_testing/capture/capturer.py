"""
Dump Capturer
=============

Attaches to a subject, suspends it at a checkpoint, and copies its
address space into a dump file.

State Machine (per subject):
    SPAWNED -> ATTACHED -> ARMED -> SUSPENDED -> CAPTURED -> RESUMED
    RESUMED -> ARMED (next checkpoint) | DETACHED
    any state -> ABORTED on unrecoverable failure, then DETACHED

Backends:
- procfs: SIGSTOP the subject, enumerate /proc/<pid>/maps, stream every
  in-scope mapping from /proc/<pid>/mem into a native dump.
- gcore: let gdb attach (ptrace stops the subject), write an ELF core,
  detach; then verify no in-scope segment was left out.

A region that is in scope but cannot be read fails the capture; it is
never skipped, since a skipped region might be the one holding the
secret. Region classes outside the scope are skipped on purpose (see
DEFAULT_REGION_SCOPE).

Attachments are exclusive: one handle per pid, and no attach to a
process that some other tracer already holds.
"""

from __future__ import annotations

import mmap
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Final, Iterator, Optional

import psutil

from memory_testing.capture import gcore, procfs
from memory_testing.capture.errors import (
    AttachDenied,
    CaptureError,
    CaptureIncomplete,
    CaptureStateError,
    ProcessGone,
)
from memory_testing.core.config import CaptureConfig
from memory_testing.core.logging import get_secure_logger
from memory_testing.snapshot.elfcore import CoreFile
from memory_testing.snapshot.fileformat import (
    SnapshotExists,
    SnapshotFormatError,
    SnapshotWriter,
    load_snapshot,
)
from memory_testing.snapshot.model import DEFAULT_REGION_SCOPE, MemorySnapshot, RegionClass


logger = get_secure_logger(__name__)

STOP_POLL_SECONDS: Final[float] = 0.01
_STOPPED_STATES: Final[frozenset[str]] = frozenset({
    psutil.STATUS_STOPPED,
    psutil.STATUS_TRACING_STOP,
})


class CaptureState(Enum):
    SPAWNED = "spawned"
    ATTACHED = "attached"
    ARMED = "armed"
    SUSPENDED = "suspended"
    CAPTURED = "captured"
    RESUMED = "resumed"
    DETACHED = "detached"
    ABORTED = "aborted"


_TRANSITIONS: Final[dict[CaptureState, frozenset[CaptureState]]] = {
    CaptureState.SPAWNED: frozenset({CaptureState.ATTACHED, CaptureState.ABORTED}),
    CaptureState.ATTACHED: frozenset({CaptureState.ARMED, CaptureState.DETACHED, CaptureState.ABORTED}),
    CaptureState.ARMED: frozenset({CaptureState.SUSPENDED, CaptureState.DETACHED, CaptureState.ABORTED}),
    # A failed capture still resumes the subject so later checkpoints can run
    CaptureState.SUSPENDED: frozenset({
        CaptureState.CAPTURED, CaptureState.RESUMED, CaptureState.DETACHED, CaptureState.ABORTED,
    }),
    CaptureState.CAPTURED: frozenset({CaptureState.RESUMED, CaptureState.DETACHED, CaptureState.ABORTED}),
    CaptureState.RESUMED: frozenset({CaptureState.ARMED, CaptureState.DETACHED, CaptureState.ABORTED}),
    CaptureState.ABORTED: frozenset({CaptureState.DETACHED}),
    CaptureState.DETACHED: frozenset(),
}

_attached_pids: set[int] = set()
_attached_lock = threading.Lock()


@dataclass
class DebugHandle:
    """An exclusive attachment to one subject process."""
    pid: int
    process: psutil.Process = field(repr=False)
    case: Optional[str] = None
    state: CaptureState = CaptureState.SPAWNED
    checkpoint: Optional[str] = None
    mem_fd: Optional[int] = field(default=None, repr=False)
    history: list[CaptureState] = field(default_factory=list)
    signal_stopped: bool = False

    def transition(self, target: CaptureState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise CaptureStateError(
                f"Cannot go from {self.state.value} to {target.value}",
                case=self.case,
                checkpoint=self.checkpoint,
            )
        self.history.append(self.state)
        self.state = target

    def require(self, *states: CaptureState) -> None:
        if self.state not in states:
            expected = "/".join(state.value for state in states)
            raise CaptureStateError(
                f"Operation needs state {expected}, handle is {self.state.value}",
                case=self.case,
                checkpoint=self.checkpoint,
            )


class DumpCapturer:
    """
    Produces memory snapshots of subject processes.

    Usage:
        capturer = DumpCapturer(config.capture)
        with capturer.attached(pid, case="simple-zeroize") as handle:
            capturer.arm_checkpoint(handle, "after-construction")
            # ... subject announces the checkpoint ...
            capturer.suspend(handle)
            snapshot = capturer.capture(handle, path, case.regions)
            capturer.resume(handle)
    """

    def __init__(self, config: Optional[CaptureConfig] = None) -> None:
        self._config = config or CaptureConfig()
        self._gdb: Optional[str] = None

    @property
    def backend(self) -> str:
        return self._config.backend

    def attach(self, pid: int, case: Optional[str] = None) -> DebugHandle:
        """
        Attach to a subject process.

        Raises:
            AttachDenied: If access is not permitted or the pid is already held
            ProcessGone: If the process no longer exists
        """
        if self.backend == "gcore" and self._gdb is None:
            self._gdb = gcore.find_gdb(self._config.gdb_path)

        with _attached_lock:
            if pid in _attached_pids:
                raise AttachDenied(f"Pid {pid} is already attached", case=case)
            _attached_pids.add(pid)

        try:
            handle = self._open_handle(pid, case)
        except BaseException:
            with _attached_lock:
                _attached_pids.discard(pid)
            raise

        handle.transition(CaptureState.ATTACHED)
        logger.debug("Attached to pid=%d (%s backend)", pid, self.backend)
        return handle

    def _open_handle(self, pid: int, case: Optional[str]) -> DebugHandle:
        try:
            process = psutil.Process(pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                raise ProcessGone(f"Pid {pid} has already exited", case=case)
        except psutil.NoSuchProcess as e:
            raise ProcessGone(f"Pid {pid} does not exist", case=case) from e
        except psutil.AccessDenied as e:
            raise AttachDenied(f"Not allowed to inspect pid {pid}", case=case) from e

        handle = DebugHandle(pid=pid, process=process, case=case)

        try:
            tracer = procfs.tracer_pid(pid)
        except FileNotFoundError as e:
            raise ProcessGone(f"Pid {pid} does not exist", case=case) from e
        except PermissionError as e:
            raise AttachDenied(f"Not allowed to inspect pid {pid}", case=case) from e
        if tracer:
            raise AttachDenied(f"Pid {pid} is already traced by pid {tracer}", case=case)

        if self.backend == "procfs":
            try:
                handle.mem_fd = procfs.open_mem(pid)
            except (FileNotFoundError, ProcessLookupError) as e:
                raise ProcessGone(f"Pid {pid} does not exist", case=case) from e
            except PermissionError as e:
                raise AttachDenied(
                    f"Not allowed to read memory of pid {pid} (ptrace access denied)",
                    case=case,
                ) from e

        return handle

    def arm_checkpoint(self, handle: DebugHandle, checkpoint: str) -> None:
        """Prepare to capture at ``checkpoint``; the next suspend belongs to it."""
        handle.require(CaptureState.ATTACHED, CaptureState.RESUMED)
        handle.transition(CaptureState.ARMED)
        handle.checkpoint = checkpoint

    def suspend(self, handle: DebugHandle) -> None:
        """
        Stop the subject before it runs past the armed checkpoint.

        With the procfs backend this sends SIGSTOP and waits until the
        kernel reports the process stopped. The gcore backend is stopped
        by gdb's ptrace attach for the duration of the capture.

        Raises:
            ProcessGone: If the subject has exited
            CaptureIncomplete: If the subject does not stop in time; the
                handle is left SUSPENDED so resume() can undo the stop
        """
        handle.require(CaptureState.ARMED)
        try:
            if self.backend == "procfs":
                handle.process.suspend()
                handle.signal_stopped = True
                self._wait_stopped(handle)
            elif not handle.process.is_running():
                raise psutil.NoSuchProcess(handle.pid)
        except psutil.NoSuchProcess as e:
            raise ProcessGone(
                "Subject exited at its checkpoint", case=handle.case, checkpoint=handle.checkpoint
            ) from e
        except CaptureIncomplete:
            handle.transition(CaptureState.SUSPENDED)
            raise
        handle.transition(CaptureState.SUSPENDED)

    def _wait_stopped(self, handle: DebugHandle) -> None:
        deadline = time.monotonic() + self._config.suspend_timeout_seconds
        while True:
            status = handle.process.status()
            if status in _STOPPED_STATES:
                return
            if status == psutil.STATUS_ZOMBIE:
                raise psutil.NoSuchProcess(handle.pid)
            if time.monotonic() >= deadline:
                raise CaptureIncomplete(
                    f"Subject did not stop within {self._config.suspend_timeout_seconds:g}s",
                    case=handle.case,
                    checkpoint=handle.checkpoint,
                )
            time.sleep(STOP_POLL_SECONDS)

    def capture(
        self,
        handle: DebugHandle,
        path: Path,
        scope: frozenset[RegionClass] = DEFAULT_REGION_SCOPE,
    ) -> MemorySnapshot:
        """
        Copy the subject's in-scope memory to ``path`` and open it.

        The returned snapshot is backed by the file just written, so what
        gets scanned is exactly what is kept as the artifact. Close it
        when done.

        Raises:
            CaptureIncomplete: If any in-scope region could not be read;
                no file is left behind
            ProcessGone: If the subject vanished mid-capture
            SnapshotExists: If ``path`` is already taken
        """
        handle.require(CaptureState.SUSPENDED)
        case, checkpoint = handle.case, handle.checkpoint

        try:
            if self.backend == "procfs":
                self._capture_procfs(handle, path, scope)
            else:
                self._capture_gcore(handle, path, scope)
            snapshot = load_snapshot(path)
        except (CaptureError, SnapshotExists, SnapshotFormatError) as e:
            raise e.with_context(case=case, checkpoint=checkpoint)

        snapshot.case = case or snapshot.case
        snapshot.checkpoint = checkpoint or snapshot.checkpoint
        snapshot.pid = handle.pid
        handle.transition(CaptureState.CAPTURED)
        logger.info(
            "Captured %s/%s: %d region(s), %d bytes -> %s",
            case, checkpoint, len(snapshot.regions), snapshot.total_bytes, path,
        )
        return snapshot

    def _capture_procfs(self, handle: DebugHandle, path: Path, scope: frozenset[RegionClass]) -> None:
        try:
            entries = procfs.read_maps(handle.pid)
        except (FileNotFoundError, ProcessLookupError) as e:
            raise ProcessGone("Subject exited during capture") from e
        except PermissionError as e:
            raise AttachDenied("Not allowed to read the subject's memory map") from e

        selected = [(entry, procfs.classify(entry)) for entry in entries]
        selected = [(entry, region_class) for entry, region_class in selected if region_class in scope]
        skipped = len(entries) - len(selected)

        with SnapshotWriter(path, case=handle.case or "", checkpoint=handle.checkpoint or "", pid=handle.pid) as writer:
            for entry, region_class in selected:
                writer.add_region(
                    start=entry.start,
                    perms=entry.perms,
                    path=entry.path,
                    region_class=region_class,
                    chunks=procfs.read_region(handle.mem_fd, entry, self._config.read_chunk_bytes),
                )

        logger.debug(
            "pid=%d: %d mapping(s) captured, %d outside scope", handle.pid, len(selected), skipped
        )

    def _capture_gcore(self, handle: DebugHandle, path: Path, scope: frozenset[RegionClass]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Reserve the name first so two captures can never share it
        try:
            with open(path, "xb"):
                pass
        except FileExistsError as e:
            raise SnapshotExists(f"Dump already exists: {path}") from e

        scratch = path.with_name(path.name + ".gcore-partial")
        try:
            output = gcore.run_gcore(self._gdb, handle.pid, scratch, self._config.checkpoint_timeout_seconds)
            logger.debug("gcore output for pid=%d: %s", handle.pid, output.strip())
            with open(scratch, "rb") as core_file:
                try:
                    data = mmap.mmap(core_file.fileno(), 0, access=mmap.ACCESS_READ)
                except (OSError, ValueError) as e:
                    raise SnapshotFormatError(f"Cannot map core {scratch}: {e}") from e
                try:
                    gcore.check_core(CoreFile(data, name=str(scratch)), scope)
                finally:
                    data.close()
            os.replace(scratch, path)
        except BaseException:
            for leftover in (scratch, path):
                try:
                    leftover.unlink()
                except FileNotFoundError:
                    pass
            raise

    def resume(self, handle: DebugHandle) -> None:
        """
        Let the subject run again (SIGCONT).

        Raises:
            ProcessGone: If the subject died while suspended
        """
        handle.require(CaptureState.SUSPENDED, CaptureState.CAPTURED)
        self._continue(handle)
        handle.transition(CaptureState.RESUMED)

    def _continue(self, handle: DebugHandle) -> None:
        if not handle.signal_stopped:
            return
        try:
            handle.process.resume()
        except psutil.NoSuchProcess as e:
            raise ProcessGone(
                "Subject died while suspended", case=handle.case, checkpoint=handle.checkpoint
            ) from e
        finally:
            handle.signal_stopped = False

    def abort(self, handle: DebugHandle) -> None:
        """Mark the attachment failed; detach() still has to follow."""
        if handle.state not in (CaptureState.ABORTED, CaptureState.DETACHED):
            handle.transition(CaptureState.ABORTED)

    def detach(self, handle: DebugHandle) -> None:
        """
        Release the attachment. Safe on every path, including a subject
        that has already exited.
        """
        if handle.state is CaptureState.DETACHED:
            return
        try:
            self._continue(handle)
        except ProcessGone:
            pass
        if handle.mem_fd is not None:
            os.close(handle.mem_fd)
            handle.mem_fd = None
        with _attached_lock:
            _attached_pids.discard(handle.pid)
        handle.transition(CaptureState.DETACHED)
        logger.debug("Detached from pid=%d", handle.pid)

    @contextmanager
    def attached(self, pid: int, case: Optional[str] = None) -> Iterator[DebugHandle]:
        """Attach for the duration of a block; always detaches."""
        handle = self.attach(pid, case=case)
        try:
            yield handle
        except BaseException:
            self.abort(handle)
            raise
        finally:
            self.detach(handle)
