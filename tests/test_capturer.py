"""Tests for the dump capturer."""

from __future__ import annotations

import os

import psutil
import pytest

from conftest import SECRET, SUBJECT_COMMAND, build_core, requires_procfs
from memory_testing.capture import gcore
from memory_testing.capture import (
    AttachDenied,
    CaptureError,
    CaptureState,
    CaptureStateError,
    DebugHandle,
    DumpCapturer,
    ProcessGone,
)
from memory_testing.cases import registry
from memory_testing.core.config import CaptureConfig
from memory_testing.scan import scan
from memory_testing.snapshot.elfcore import PF_R, PF_W
from memory_testing.snapshot.model import RegionClass
from memory_testing.subject.driver import SubjectDriver


class TestStateMachine:

    def _handle(self):
        return DebugHandle(pid=os.getpid(), process=psutil.Process(), case="c")

    def test_legal_path(self):
        handle = self._handle()
        for state in (
            CaptureState.ATTACHED,
            CaptureState.ARMED,
            CaptureState.SUSPENDED,
            CaptureState.CAPTURED,
            CaptureState.RESUMED,
            CaptureState.ARMED,
            CaptureState.SUSPENDED,
            CaptureState.RESUMED,
            CaptureState.DETACHED,
        ):
            handle.transition(state)
        assert handle.state is CaptureState.DETACHED
        assert handle.history[0] is CaptureState.SPAWNED

    @pytest.mark.parametrize("path", [
        [CaptureState.SUSPENDED],
        [CaptureState.ATTACHED, CaptureState.CAPTURED],
        [CaptureState.ATTACHED, CaptureState.ARMED, CaptureState.RESUMED],
        [CaptureState.ATTACHED, CaptureState.DETACHED, CaptureState.ARMED],
    ])
    def test_illegal_transitions(self, path):
        handle = self._handle()
        with pytest.raises(CaptureStateError):
            for state in path:
                handle.transition(state)

    def test_abort_then_detach(self):
        handle = self._handle()
        handle.transition(CaptureState.ATTACHED)
        handle.transition(CaptureState.ABORTED)
        handle.transition(CaptureState.DETACHED)


class TestAttach:

    def test_missing_process(self):
        process = psutil.Popen(["true"])
        process.wait()
        with pytest.raises(ProcessGone):
            DumpCapturer().attach(process.pid)

    def test_gcore_needs_gdb(self):
        capturer = DumpCapturer(CaptureConfig(backend="gcore", gdb_path="no-such-gdb-binary"))
        with pytest.raises(CaptureError):
            capturer.attach(os.getpid())


class TestGcoreCapture:

    @pytest.fixture
    def handle(self):
        handle = DebugHandle(pid=os.getpid(), process=psutil.Process(), case="c", checkpoint="after-drop")
        for state in (CaptureState.ATTACHED, CaptureState.ARMED, CaptureState.SUSPENDED):
            handle.transition(state)
        return handle

    def _capturer(self, monkeypatch, core):
        def write_core(gdb, pid, target, timeout):
            target.write_bytes(core)
            return "Saved corefile"

        monkeypatch.setattr(gcore, "run_gcore", write_core)
        capturer = DumpCapturer(CaptureConfig(backend="gcore"))
        capturer._gdb = "gdb"
        return capturer

    def test_core_becomes_the_dump(self, handle, monkeypatch, tmp_path):
        core = build_core(segments=[(0x7F0000, PF_R | PF_W, b"\x00" * 8 + SECRET, 8 + len(SECRET))])
        capturer = self._capturer(monkeypatch, core)
        path = tmp_path / "c" / "after-drop.dump"

        with capturer.capture(handle, path) as snapshot:
            assert snapshot.checkpoint == "after-drop"
            assert scan(snapshot, SECRET).occurrences[0].address == 0x7F0008
        assert handle.state is CaptureState.CAPTURED
        assert path.read_bytes() == core
        assert not path.with_name(path.name + ".gcore-partial").exists()

    def test_core_missing_in_scope_bytes_leaves_nothing(self, handle, monkeypatch, tmp_path):
        core = build_core(segments=[(0x7F0000, PF_R | PF_W, b"", 4096)])
        capturer = self._capturer(monkeypatch, core)
        path = tmp_path / "c" / "after-drop.dump"

        with pytest.raises(CaptureError):
            capturer.capture(handle, path)
        assert handle.state is CaptureState.SUSPENDED
        assert list(path.parent.iterdir()) == []


@requires_procfs
class TestCapture:

    @pytest.fixture
    def subject(self, cases_file):
        case = registry.load(cases_file)[0]
        with SubjectDriver(SUBJECT_COMMAND, cases_file, checkpoint_timeout=10) as driver:
            events = driver.run(case)
            yield case, driver, events

    def test_capture_finds_constructed_secret(self, subject, tmp_path):
        case, driver, events = subject
        capturer = DumpCapturer()
        event = next(events)
        path = tmp_path / case.name / "after-construction.dump"

        with capturer.attached(event.pid, case=case.name) as handle:
            capturer.arm_checkpoint(handle, event.checkpoint)
            capturer.suspend(handle)
            assert psutil.Process(event.pid).status() == psutil.STATUS_STOPPED
            with capturer.capture(handle, path, case.regions) as snapshot:
                capturer.resume(handle)
                assert snapshot.case == case.name
                assert snapshot.checkpoint == "after-construction"
                assert snapshot.pid == event.pid
                assert all(region.region_class in case.regions for region in snapshot.regions)
                assert scan(snapshot, SECRET).found
        assert handle.state is CaptureState.DETACHED
        assert path.exists()
        driver.resume()

    def test_exclusive_attachment(self, subject):
        case, _driver, events = subject
        event = next(events)
        capturer = DumpCapturer()
        with capturer.attached(event.pid, case=case.name):
            with pytest.raises(AttachDenied):
                DumpCapturer().attach(event.pid)
        DumpCapturer().detach(DumpCapturer().attach(event.pid))

    def test_capture_requires_suspension(self, subject, tmp_path):
        case, _driver, events = subject
        event = next(events)
        capturer = DumpCapturer()
        with capturer.attached(event.pid) as handle:
            with pytest.raises(CaptureStateError):
                capturer.capture(handle, tmp_path / "x.dump")
        assert not (tmp_path / "x.dump").exists()

    def test_detach_resumes_stopped_subject(self, subject):
        _case, _driver, events = subject
        event = next(events)
        capturer = DumpCapturer()
        handle = capturer.attach(event.pid)
        capturer.arm_checkpoint(handle, event.checkpoint)
        capturer.suspend(handle)
        capturer.detach(handle)
        assert psutil.Process(event.pid).status() != psutil.STATUS_STOPPED

    def test_out_of_scope_regions_skipped(self, subject, tmp_path):
        case, _driver, events = subject
        event = next(events)
        capturer = DumpCapturer()
        with capturer.attached(event.pid) as handle:
            capturer.arm_checkpoint(handle, event.checkpoint)
            capturer.suspend(handle)
            with capturer.capture(handle, tmp_path / "code.dump", frozenset({RegionClass.CODE})) as snapshot:
                assert snapshot.regions
                assert {region.region_class for region in snapshot.regions} == {RegionClass.CODE}
                assert not scan(snapshot, SECRET).found
            capturer.resume(handle)
