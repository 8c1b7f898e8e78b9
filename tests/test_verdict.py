"""Tests for the verdict engine and the run report."""

from __future__ import annotations

import json

import pytest

from conftest import SECRET_HEX
from memory_testing.cases.models import CheckpointSpec, Expectation, TestCase
from memory_testing.scan.scanner import Occurrence, ScanResult
from memory_testing.verdict import (
    EXIT_HARNESS_FAILURE,
    EXIT_LEAK,
    EXIT_OK,
    CheckpointFailure,
    FailureKind,
    VerdictStatus,
    error_verdict,
    evaluate,
    summarize,
    verify_report,
    write_report,
)


PRESENT, ABSENT = Expectation.PRESENT, Expectation.ABSENT


def make_case(name="simple-zeroize", expectations=(PRESENT, ABSENT)):
    names = ["after-construction", "after-drop", "idle"]
    return TestCase(
        name=name,
        secret=bytes.fromhex(SECRET_HEX),
        checkpoints=tuple(CheckpointSpec(names[i], e) for i, e in enumerate(expectations)),
    )


def result(case, checkpoint, found):
    occurrences = (Occurrence(address=0x1000, region_index=0, offset=0),) if found else ()
    return ScanResult(case=case.name, checkpoint=checkpoint, found=found, occurrences=occurrences)


def results(case, *found):
    return {
        spec.name: result(case, spec.name, hit)
        for spec, hit in zip(case.checkpoints, found)
    }


class TestEvaluate:

    def test_pass(self):
        case = make_case()
        verdict = evaluate(case, results(case, True, False))
        assert verdict.status is VerdictStatus.PASS
        assert verdict.passed
        assert verdict.failure is None
        assert [record.found for record in verdict.records] == [True, False]
        assert not verdict.leak_detected

    def test_leak(self):
        case = make_case()
        verdict = evaluate(case, results(case, True, True))
        assert verdict.status is VerdictStatus.FAIL
        assert verdict.failure is FailureKind.LEAK_DETECTED
        assert verdict.failed_checkpoint == "after-drop"
        assert verdict.leak_detected
        assert verdict.records[1].occurrences == 1

    def test_secret_missing(self):
        case = make_case()
        verdict = evaluate(case, results(case, False, False))
        assert verdict.failure is FailureKind.SECRET_MISSING
        assert verdict.failed_checkpoint == "after-construction"
        assert not verdict.leak_detected

    def test_first_mismatch_is_primary_but_leak_is_kept(self):
        case = make_case()
        verdict = evaluate(case, results(case, False, True))
        assert verdict.failure is FailureKind.SECRET_MISSING
        assert verdict.leak_detected

    def test_missing_result_is_inconclusive(self):
        case = make_case()
        verdict = evaluate(case, {"after-construction": result(case, "after-construction", True)})
        assert verdict.failure is FailureKind.INCONCLUSIVE
        assert verdict.failed_checkpoint == "after-drop"
        assert verdict.records[1].found is None

    def test_recorded_failure_kind(self):
        case = make_case()
        failures = {"after-drop": CheckpointFailure(FailureKind.HARNESS_TIMEOUT, "No checkpoint within 1s")}
        verdict = evaluate(case, results(case, True), failures)
        assert verdict.failure is FailureKind.HARNESS_TIMEOUT
        assert verdict.detail == "No checkpoint within 1s"

    def test_dump_digest_recorded(self, tmp_path):
        case = make_case()
        dump = tmp_path / "after-drop.dump"
        dump.write_bytes(b"dump bytes")
        verdict = evaluate(case, results(case, True, False), dumps={"after-drop": dump})
        record = verdict.records[1]
        assert record.dump_path == str(dump)
        assert len(record.dump_sha256) == 64
        assert verdict.records[0].dump_path is None

    def test_error_verdict(self):
        case = make_case()
        verdict = error_verdict(case, FailureKind.HARNESS_ERROR, "attach denied")
        assert verdict.failure is FailureKind.HARNESS_ERROR
        assert verdict.failed_checkpoint == "after-construction"
        assert not verdict.leak_detected


class TestSummary:

    def _verdict(self, name, *found):
        case = make_case(name)
        return evaluate(case, results(case, *found))

    def test_all_pass(self):
        summary = summarize([self._verdict("a", True, False), self._verdict("b", True, False)])
        assert summary.passed
        assert summary.exit_code == EXIT_OK

    def test_leak_wins_over_harness_failure(self):
        case = make_case("c")
        summary = summarize([
            error_verdict(case, FailureKind.HARNESS_TIMEOUT, "timeout"),
            self._verdict("leaky", True, True),
        ])
        assert summary.exit_code == EXIT_LEAK

    def test_harness_failure_without_leak(self):
        summary = summarize([self._verdict("a", True, False), self._verdict("b", False, False)])
        assert summary.exit_code == EXIT_HARNESS_FAILURE
        assert [verdict.case for verdict in summary.failed] == ["b"]

    def test_verdicts_sorted_by_case(self):
        summary = summarize([self._verdict("z", True, False), self._verdict("a", True, False)])
        assert [verdict.case for verdict in summary.verdicts] == ["a", "z"]


class TestReport:

    @pytest.fixture
    def summary(self, tmp_path):
        case = make_case()
        dump = tmp_path / "out" / "simple-zeroize" / "after-drop.dump"
        dump.parent.mkdir(parents=True)
        dump.write_bytes(b"dump")
        passing = evaluate(case, results(case, True, False), dumps={"after-drop": dump})
        leaking = evaluate(make_case("leaky"), results(make_case("leaky"), True, True))
        return summarize([passing, leaking])

    def test_write_and_verify(self, tmp_path, summary):
        path = tmp_path / "out" / "report.json"
        document = write_report(path, summary, subject="subject", config_hash="abc")
        assert verify_report(path) == (True, 2)

        stored = json.loads(path.read_text(encoding="utf-8"))
        assert stored == document
        assert stored["summary"]["exit_code"] == EXIT_LEAK
        assert stored["entries"][0]["previous_hash"] == "genesis"
        assert stored["entries"][1]["previous_hash"] == stored["entries"][0]["entry_hash"]
        assert stored["chain_head"] == stored["entries"][1]["entry_hash"]
        assert [entry["case"] for entry in stored["entries"]] == ["leaky", "simple-zeroize"]
        assert SECRET_HEX not in path.read_text(encoding="utf-8")

    def test_never_overwrites(self, tmp_path, summary):
        path = tmp_path / "report.json"
        path.write_text("{}")
        with pytest.raises(FileExistsError):
            write_report(path, summary)

    def test_tampered_entry_detected(self, tmp_path, summary):
        path = tmp_path / "report.json"
        write_report(path, summary)
        document = json.loads(path.read_text(encoding="utf-8"))
        document["entries"][0]["status"] = "PASS"
        path.write_text(json.dumps(document), encoding="utf-8")
        assert verify_report(path) == (False, 0)

    def test_dropped_entry_detected(self, tmp_path, summary):
        path = tmp_path / "report.json"
        write_report(path, summary)
        document = json.loads(path.read_text(encoding="utf-8"))
        del document["entries"][0]
        path.write_text(json.dumps(document), encoding="utf-8")
        assert verify_report(path) == (False, 0)

    def test_modified_dump_detected(self, tmp_path, summary):
        path = tmp_path / "report.json"
        write_report(path, summary)
        (tmp_path / "out" / "simple-zeroize" / "after-drop.dump").write_bytes(b"changed")
        assert verify_report(path) == (False, 1)
        assert verify_report(path, check_dumps=False) == (True, 2)

    def test_unreadable_report(self, tmp_path):
        path = tmp_path / "report.json"
        path.write_text("not json")
        assert verify_report(path) == (False, 0)
