"""
Run Report
==========

Writes ``report.json`` for a run and verifies it later.

Every case is one entry, passing cases included, with a row per
checkpoint (expectation, result, occurrence count, dump path and dump
SHA-256). Entries are hash-chained: each carries the hash of the entry
before it and a hash over its own content, starting from ``"genesis"``.
Editing, dropping or reordering an entry breaks the chain, and the dump
digests tie the report to the exact files that were scanned.

The report never contains secret patterns, only their verdicts.
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Final, Optional

from memory_testing.core.logging import get_secure_logger
from memory_testing.verdict.engine import RunSummary, sha256_file


logger = get_secure_logger(__name__)

REPORT_FORMAT: Final[str] = "memory-testing-report"
REPORT_VERSION: Final[int] = 1
GENESIS_HASH: Final[str] = "genesis"


def _entry_hash(entry: dict) -> str:
    content = {key: value for key, value in entry.items() if key != "entry_hash"}
    return hashlib.sha256(json.dumps(content, sort_keys=True).encode("utf-8")).hexdigest()


def build_report(
    summary: RunSummary,
    subject: Optional[str] = None,
    config_hash: Optional[str] = None,
) -> dict:
    """Assemble the report document with its hash chain."""
    entries = []
    previous_hash = GENESIS_HASH
    for verdict in summary.verdicts:
        entry = verdict.to_dict()
        entry["previous_hash"] = previous_hash
        entry["entry_hash"] = _entry_hash(entry)
        previous_hash = entry["entry_hash"]
        entries.append(entry)

    return {
        "format": REPORT_FORMAT,
        "version": REPORT_VERSION,
        "subject": subject,
        "config_hash": config_hash,
        "summary": summary.to_dict(),
        "entries": entries,
        "chain_head": previous_hash,
    }


def write_report(
    path: Path,
    summary: RunSummary,
    subject: Optional[str] = None,
    config_hash: Optional[str] = None,
) -> dict:
    """
    Write the report; an existing report is never replaced.

    Returns:
        The written document

    Raises:
        FileExistsError: If ``path`` already exists
    """
    document = build_report(summary, subject=subject, config_hash=config_hash)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "x", encoding="utf-8") as handle:
        json.dump(document, handle, indent=2, sort_keys=True)
        handle.write("\n")
        handle.flush()
        os.fsync(handle.fileno())

    logger.info("Report written to %s (%d case(s))", path, len(document["entries"]))
    return document


def verify_report(path: Path, check_dumps: bool = True) -> tuple[bool, int]:
    """
    Verify a report's hash chain and, optionally, its dump digests.

    Returns:
        Tuple of (is_valid, number of entries verified before the first
        problem)
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = json.load(handle)
        entries = document["entries"]
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning("Cannot read report %s: %s", path, e)
        return False, 0

    previous_hash = GENESIS_HASH
    count = 0
    try:
        for entry in entries:
            if entry.get("previous_hash") != previous_hash:
                logger.warning("Report chain broken at entry %d", count)
                return False, count
            if entry.get("entry_hash") != _entry_hash(entry):
                logger.warning("Report entry %d was modified", count)
                return False, count
            if check_dumps and not _dumps_match(entry):
                return False, count
            previous_hash = entry["entry_hash"]
            count += 1
    except (AttributeError, TypeError) as e:
        logger.warning("Malformed report entry %d: %s", count, e)
        return False, count

    if document.get("chain_head") != previous_hash:
        logger.warning("Report chain head does not match its last entry")
        return False, count
    return True, count


def _dumps_match(entry: dict) -> bool:
    for row in entry.get("checkpoints", []):
        dump, expected = row.get("dump_path"), row.get("dump_sha256")
        if not dump or not expected:
            continue
        try:
            actual = sha256_file(Path(dump))
        except OSError:
            logger.warning("Dump %s listed in the report is missing", dump)
            return False
        if actual != expected:
            logger.warning("Dump %s does not match its recorded digest", dump)
            return False
    return True
