"""
Subject Process Driver
======================

Spawns an instrumented subject for one test case and sequences the
checkpoint notifications it emits.

Checkpoint lines are read by a background thread and handed to the
harness through a queue, which is the only channel between the subject's
output and the capture logic. The harness thread blocks on that queue with
a per-checkpoint timeout, so a hung subject can never hang the run.

The driver does not look inside checkpoints; it only checks that they
arrive in the declared order and in time.
"""

from __future__ import annotations

import queue
import subprocess
import sys
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Iterator, Optional, Sequence

import psutil

from memory_testing.cases.models import TestCase
from memory_testing.core.errors import HarnessError
from memory_testing.core.logging import get_secure_logger
from memory_testing.subject.protocol import RESUME_TOKEN, CheckpointLine, parse_line


logger = get_secure_logger(__name__)

STDERR_TAIL_LINES: Final[int] = 20
KILL_WAIT_SECONDS: Final[float] = 5.0

_EOF: Final[object] = object()


class SubjectError(HarnessError):
    """Base class for subject process failures."""
    pass


class SubjectSpawnError(SubjectError):
    """The subject binary could not be started."""
    pass


class SubjectCrashed(SubjectError):
    """The subject terminated before emitting every expected checkpoint."""

    def __init__(self, message: str, returncode: Optional[int] = None, **context) -> None:
        super().__init__(message, **context)
        self.returncode = returncode


class SubjectTimeout(SubjectError):
    """A checkpoint did not arrive within the bounded wait."""
    pass


class SubjectProtocolError(SubjectError):
    """The subject announced a checkpoint out of order."""
    pass


@dataclass(frozen=True)
class CheckpointEvent:
    """The subject has reached a checkpoint and is waiting to be resumed."""
    checkpoint: str
    index: int
    pid: int
    alive: bool


def build_command(subject: str | Path) -> list[str]:
    """
    Command prefix for a subject path.

    Python scripts are run with the current interpreter so they do not
    need an execute bit or a shebang.
    """
    path = str(subject)
    if path.endswith(".py"):
        return [sys.executable, path]
    return [path]


class SubjectDriver:
    """
    Runs one subject process through its checkpoints.

    Usage:
        with SubjectDriver(command, cases_file, checkpoint_timeout=30) as driver:
            for event in driver.run(case):
                capture(event.pid)
                driver.resume()
        # subject has exited or been killed here
    """

    def __init__(
        self,
        command: Sequence[str],
        cases_file: Path,
        checkpoint_timeout: float = 30.0,
        exit_timeout: float = 10.0,
    ) -> None:
        if not command:
            raise ValueError("Subject command cannot be empty")
        self._command = list(command)
        self._cases_file = Path(cases_file)
        self._checkpoint_timeout = checkpoint_timeout
        self._exit_timeout = exit_timeout

        self._process: Optional[subprocess.Popen] = None
        self._case: Optional[TestCase] = None
        self._events: queue.Queue = queue.Queue()
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._threads: list[threading.Thread] = []
        self._awaiting_resume = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.poll() if self._process is not None else None

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr_tail)

    def start(self, case: TestCase) -> int:
        """
        Spawn the subject for ``case``.

        Returns:
            The subject's pid

        Raises:
            SubjectSpawnError: If the process cannot be created
        """
        if self._process is not None:
            raise RuntimeError("SubjectDriver can only run one subject")

        self._case = case
        argv = [*self._command, str(self._cases_file), case.name]
        try:
            self._process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                close_fds=True,
            )
        except OSError as e:
            raise SubjectSpawnError(f"Cannot start subject {argv[0]}: {e}", case=case.name) from e

        self._threads = [
            threading.Thread(
                target=self._read_stdout,
                name=f"subject-out-{self._process.pid}",
                daemon=True,
            ),
            threading.Thread(
                target=self._read_stderr,
                name=f"subject-err-{self._process.pid}",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

        logger.info("Started subject pid=%d for case %s", self._process.pid, case.name)
        return self._process.pid

    def _read_stdout(self) -> None:
        stream = self._process.stdout
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", "replace")
                parsed = parse_line(line)
                if parsed is not None:
                    self._events.put(parsed)
                else:
                    logger.debug("subject[%d]: %s", self._process.pid, line.rstrip())
        except (OSError, ValueError):
            # Pipe closed by terminate()
            pass
        finally:
            self._events.put(_EOF)

    def _read_stderr(self) -> None:
        stream = self._process.stderr
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", "replace").rstrip()
                self._stderr_tail.append(line)
                logger.debug("subject[%d] stderr: %s", self._process.pid, line)
        except (OSError, ValueError):
            pass

    def run(self, case: TestCase) -> Iterator[CheckpointEvent]:
        """
        Start the subject and yield one event per declared checkpoint.

        The caller must call resume() after handling each event. When the
        last event has been handled the subject is given a bounded time
        to exit on its own.

        Raises:
            SubjectSpawnError, SubjectCrashed, SubjectTimeout,
            SubjectProtocolError
        """
        if self._process is None:
            self.start(case)

        for index, spec in enumerate(case.checkpoints):
            if self._awaiting_resume:
                raise RuntimeError("resume() must be called before the next checkpoint")
            event = self._wait_for(index, spec.name)
            self._awaiting_resume = True
            yield event

        if self._awaiting_resume:
            raise RuntimeError("resume() must be called after the last checkpoint")
        self._finish()

    def _wait_for(self, index: int, expected: str) -> CheckpointEvent:
        case_name = self._case.name if self._case else None
        try:
            item = self._events.get(timeout=self._checkpoint_timeout)
        except queue.Empty:
            raise SubjectTimeout(
                f"No checkpoint within {self._checkpoint_timeout:g}s",
                case=case_name,
                checkpoint=expected,
            ) from None

        if item is _EOF:
            returncode = self._wait_exit(self._exit_timeout)
            # Let the stderr reader drain so the tail below is complete
            for thread in self._threads[1:]:
                thread.join(timeout=1.0)
            detail = f"exit code {returncode}" if returncode is not None else "closed its output"
            tail = "; ".join(self._stderr_tail)
            message = f"Subject {detail} before checkpoint {index + 1}/{len(self._case.checkpoints)}"
            if tail:
                message += f" (stderr: {tail})"
            raise SubjectCrashed(message, returncode=returncode, case=case_name, checkpoint=expected)

        assert isinstance(item, CheckpointLine)
        name = item.name or expected
        if name != expected:
            raise SubjectProtocolError(
                f"Expected checkpoint {expected!r}, subject announced {name!r}",
                case=case_name,
                checkpoint=expected,
            )

        alive = self._process.poll() is None
        logger.info("Case %s reached checkpoint %s", case_name, name)
        return CheckpointEvent(checkpoint=name, index=index, pid=self._process.pid, alive=alive)

    def resume(self) -> None:
        """
        Let the subject continue past its current checkpoint.

        Raises:
            SubjectCrashed: If the subject is no longer reading its input
        """
        if self._process is None:
            raise RuntimeError("Subject has not been started")
        case_name = self._case.name if self._case else None
        try:
            self._process.stdin.write(RESUME_TOKEN)
            self._process.stdin.flush()
        except (BrokenPipeError, ValueError, OSError) as e:
            raise SubjectCrashed(
                "Subject stopped reading input before it was resumed",
                returncode=self._process.poll(),
                case=case_name,
            ) from e
        self._awaiting_resume = False

    def _finish(self) -> None:
        returncode = self._wait_exit(self._exit_timeout)
        case_name = self._case.name if self._case else None
        if returncode is None:
            logger.warning("Subject for case %s did not exit after its last checkpoint; killing it", case_name)
            self.terminate()
        elif returncode != 0:
            logger.warning("Subject for case %s exited with code %d after its last checkpoint", case_name, returncode)
        else:
            logger.debug("Subject for case %s exited cleanly", case_name)

    def _wait_exit(self, timeout: float) -> Optional[int]:
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def terminate(self) -> None:
        """Kill the subject and any children it spawned, then reap it."""
        process = self._process
        if process is None:
            return

        if process.poll() is None:
            try:
                children = psutil.Process(process.pid).children(recursive=True)
            except psutil.NoSuchProcess:
                children = []
            for child in children:
                try:
                    child.kill()
                except psutil.NoSuchProcess:
                    pass
            # The subject itself is reaped through Popen so its exit code is kept
            process.kill()
            psutil.wait_procs(children, timeout=KILL_WAIT_SECONDS)
            try:
                process.wait(timeout=KILL_WAIT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.error("Subject pid=%d survived SIGKILL", process.pid)
            else:
                logger.info("Killed subject pid=%d", process.pid)

        # Readers see EOF once the subject is gone
        for thread in self._threads:
            thread.join(timeout=KILL_WAIT_SECONDS)

        for stream in (process.stdin, process.stdout, process.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass

    def __enter__(self) -> SubjectDriver:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.terminate()
