"""Tests for the checkpoint protocol and the subject driver."""

from __future__ import annotations

import sys
import time

import psutil
import pytest

from conftest import SUBJECT_COMMAND
from memory_testing.cases import registry
from memory_testing.subject.driver import (
    SubjectCrashed,
    SubjectDriver,
    SubjectProtocolError,
    SubjectSpawnError,
    SubjectTimeout,
    build_command,
)
from memory_testing.subject.protocol import (
    LEGACY_CHECKPOINT_LINE,
    CheckpointLine,
    format_checkpoint,
    parse_line,
)


class TestProtocol:

    def test_format(self):
        assert format_checkpoint("after-drop") == "CHECKPOINT after-drop\n"

    @pytest.mark.parametrize("name", ["", "two\nlines"])
    def test_format_rejects(self, name):
        with pytest.raises(ValueError):
            format_checkpoint(name)

    def test_parse_named(self):
        assert parse_line("CHECKPOINT after-drop\r\n") == CheckpointLine("after-drop")

    def test_parse_legacy(self):
        assert parse_line(LEGACY_CHECKPOINT_LINE + "\n") == CheckpointLine(None)

    def test_parse_other_output(self):
        assert parse_line("secret dropped\n") is None
        assert parse_line("checkpoint lower case\n") is None


def test_build_command_runs_python_scripts_with_interpreter(tmp_path):
    script = tmp_path / "subject.py"
    assert build_command(script) == [sys.executable, str(script)]
    assert build_command("/usr/local/bin/subject") == ["/usr/local/bin/subject"]


@pytest.fixture
def case(cases_file):
    return registry.load(cases_file)[0]


class TestSubjectDriver:

    def test_runs_through_checkpoints(self, cases_file, case):
        events = []
        with SubjectDriver(SUBJECT_COMMAND, cases_file, checkpoint_timeout=10) as driver:
            for event in driver.run(case):
                assert psutil.pid_exists(event.pid)
                events.append((event.index, event.checkpoint, event.alive))
                driver.resume()
            assert driver.returncode == 0
        assert events == [(0, "after-construction", True), (1, "after-drop", True)]

    def test_resume_is_required(self, cases_file, case):
        with SubjectDriver(SUBJECT_COMMAND, cases_file, checkpoint_timeout=10) as driver:
            events = driver.run(case)
            next(events)
            with pytest.raises(RuntimeError):
                next(events)

    def test_timeout_kills_subject(self, cases_file, case):
        command = [*SUBJECT_COMMAND, "--hang-after", "1"]
        started = time.monotonic()
        with SubjectDriver(command, cases_file, checkpoint_timeout=1.0) as driver:
            with pytest.raises(SubjectTimeout) as info:
                for _event in driver.run(case):
                    driver.resume()
            pid = driver.pid
        assert info.value.checkpoint == "after-drop"
        assert time.monotonic() - started < 10
        assert driver.returncode is not None
        assert not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE

    def test_crash_before_checkpoint(self, cases_file, case):
        command = [sys.executable, "-c", "import sys; sys.stderr.write('boom\\n'); sys.exit(3)"]
        with SubjectDriver(command, cases_file, checkpoint_timeout=10) as driver:
            with pytest.raises(SubjectCrashed) as info:
                list(driver.run(case))
            assert driver.stderr_tail == ["boom"]
        assert info.value.returncode == 3
        assert info.value.checkpoint == "after-construction"
        assert "boom" in str(info.value)

    def test_out_of_order_checkpoint(self, cases_file, case):
        command = [
            sys.executable, "-c",
            "import sys; print('CHECKPOINT after-drop', flush=True); sys.stdin.read(1)",
        ]
        with SubjectDriver(command, cases_file, checkpoint_timeout=10) as driver:
            with pytest.raises(SubjectProtocolError):
                list(driver.run(case))

    def test_legacy_line_maps_to_next_checkpoint(self, cases_file, case):
        script = (
            "import sys\n"
            "for _ in range(2):\n"
            "    print('Waiting for dump...', flush=True)\n"
            "    sys.stdin.read(1)\n"
        )
        names = []
        with SubjectDriver([sys.executable, "-c", script], cases_file, checkpoint_timeout=10) as driver:
            for event in driver.run(case):
                names.append(event.checkpoint)
                driver.resume()
        assert names == ["after-construction", "after-drop"]

    def test_unknown_binary(self, cases_file, case, tmp_path):
        with SubjectDriver([str(tmp_path / "missing")], cases_file) as driver:
            with pytest.raises(SubjectSpawnError):
                driver.start(case)
