"""Tests for the capture-dumps and scan-dump command lines."""

from __future__ import annotations

import base64
import json
import logging

import pytest

from conftest import SECRET, SECRET_HEX, requires_procfs
from memory_testing.cli import main, scan_main
from memory_testing.snapshot.fileformat import SnapshotWriter
from memory_testing.snapshot.model import RegionClass
from memory_testing.verdict import EXIT_CONFIG_ERROR, EXIT_LEAK, EXIT_OK


SUBJECT_SCRIPT = (
    "import sys\n"
    "from memory_testing.subject.reference import main\n"
    "sys.exit(main())\n"
)


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    root = logging.getLogger("memory_testing")
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    root.propagate = True
    root.setLevel(logging.NOTSET)


@pytest.fixture
def subject(tmp_path):
    path = tmp_path / "subject.py"
    path.write_text(SUBJECT_SCRIPT, encoding="utf-8")
    return path


@pytest.fixture
def dump(tmp_path):
    path = tmp_path / "dumps" / "after-drop.dump"
    with SnapshotWriter(path, case="simple-zeroize", checkpoint="after-drop", pid=42) as writer:
        writer.add_region(0x7f0000000000, "rw-p", "", RegionClass.ANONYMOUS, [b"\x00" * 64, SECRET, b"\x00" * 8])
    return path


class TestCaptureDumpsUsage:

    def test_missing_arguments(self, capsys):
        with pytest.raises(SystemExit) as info:
            main([])
        assert info.value.code == EXIT_CONFIG_ERROR
        assert "usage:" in capsys.readouterr().err

    def test_unknown_backend(self, subject, tmp_path):
        with pytest.raises(SystemExit) as info:
            main([str(subject), str(tmp_path / "out"), "--backend", "ptrace"])
        assert info.value.code == EXIT_CONFIG_ERROR

    def test_missing_subject(self, tmp_path, cases_file, harness_config, capsys):
        code = main([str(tmp_path / "missing"), str(tmp_path / "out"), "--cases", str(cases_file)])
        assert code == EXIT_CONFIG_ERROR
        assert "does not exist" in capsys.readouterr().err
        assert not (tmp_path / "out").exists()

    def test_missing_cases_file(self, subject, tmp_path, harness_config):
        code = main([str(subject), str(tmp_path / "out"), "--cases", str(tmp_path / "nope.json")])
        assert code == EXIT_CONFIG_ERROR

    def test_unknown_case_filter(self, subject, tmp_path, cases_file, harness_config):
        code = main([
            str(subject), str(tmp_path / "out"),
            "--cases", str(cases_file), "--case", "no-such-case",
        ])
        assert code == EXIT_CONFIG_ERROR

    def test_existing_report_is_a_config_error(self, subject, tmp_path, cases_file, harness_config):
        out = tmp_path / "out"
        out.mkdir()
        (out / "report.json").write_text("{}")
        code = main([str(subject), str(out), "--cases", str(cases_file)])
        assert code == EXIT_CONFIG_ERROR
        assert (out / "report.json").read_text() == "{}"

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as info:
            main(["--version"])
        assert info.value.code == 0
        assert "capture-dumps" in capsys.readouterr().out


@requires_procfs
class TestCaptureDumpsRun:

    def test_passing_subject(self, subject, tmp_path, cases_file, harness_config, capsys):
        out = tmp_path / "out"
        code = main([str(subject), str(out), "--cases", str(cases_file), "--timeout", "10"])

        assert code == EXIT_OK
        assert "PASS  simple-zeroize" in capsys.readouterr().out
        assert (out / "simple-zeroize" / "after-drop.dump").is_file()
        assert (out / "report.json").is_file()
        log_text = (out / "capture-dumps.log").read_text(encoding="utf-8")
        assert "simple-zeroize" in log_text
        assert SECRET_HEX not in log_text

    def test_leaking_subject(self, subject, tmp_path, cases_file, harness_config, capsys):
        out = tmp_path / "out"
        code = main([
            str(subject), str(out),
            "--cases", str(cases_file),
            "--subject-arg=--skip-zeroize",
        ])

        assert code == EXIT_LEAK
        printed = capsys.readouterr().out
        assert "FAIL  simple-zeroize  LEAK_DETECTED at after-drop" in printed
        assert "0/1 case(s) passed" in printed


class TestScanDump:

    def test_found(self, dump, capsys):
        assert scan_main([str(dump), "--hex", SECRET_HEX]) == EXIT_LEAK
        out = capsys.readouterr().out
        assert "0x7f0000000040" in out
        assert "1 occurrence(s)" in out

    def test_not_found(self, dump):
        assert scan_main([str(dump), "--utf8", "not in this dump"]) == EXIT_OK

    def test_base64_pattern(self, dump):
        encoded = base64.b64encode(SECRET).decode("ascii")
        assert scan_main([str(dump), "--base64", encoded]) == EXIT_LEAK

    def test_json_output(self, dump, capsys):
        scan_main([str(dump), "--hex", SECRET_HEX, "--json"])
        result = json.loads(capsys.readouterr().out)
        assert result["found"] is True
        assert result["case"] == "simple-zeroize"
        assert result["checkpoint"] == "after-drop"
        assert result["occurrences"][0]["address"] == "0x7f0000000040"

    def test_unreadable_dump(self, tmp_path):
        bad = tmp_path / "bad.dump"
        bad.write_bytes(b"not a dump at all")
        assert scan_main([str(bad), "--hex", SECRET_HEX]) == EXIT_CONFIG_ERROR
        assert scan_main([str(tmp_path / "missing.dump"), "--hex", SECRET_HEX]) == EXIT_CONFIG_ERROR

    def test_bad_pattern(self, dump):
        assert scan_main([str(dump), "--hex", "xyz"]) == EXIT_CONFIG_ERROR

    def test_pattern_required(self, dump):
        with pytest.raises(SystemExit) as info:
            scan_main([str(dump)])
        assert info.value.code == EXIT_CONFIG_ERROR
