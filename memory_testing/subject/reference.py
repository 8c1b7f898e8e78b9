"""
Reference Subject
=================

An instrumented subject that speaks the checkpoint protocol, used by the
test suite and as a template for native subjects.

Invocation:
    memory-testing-subject [--skip-zeroize] [--hang-after N] <cases-file> <case-name>

Timeline for a case with checkpoints c0, c1, ...:
    construct secret -> announce c0 -> drop secret -> announce c1 -> ...

The case file is read as plain JSON and only the hex text of the secret
is kept; the bytes are decoded directly into a SecureBuffer. Decoding the
case through the registry would leave a second, un-wipeable copy of the
secret in this process.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from memory_testing.subject.protocol import format_checkpoint
from memory_testing.subject.secure_memory import SecretArena


EXIT_OK = 0
EXIT_PROTOCOL = 1
EXIT_USAGE = 2


class SubjectUsageError(Exception):
    """Raised when the case cannot be run by this subject."""
    pass


def _load_case(cases_file: Path, case_name: str) -> tuple[str, list[str]]:
    """Return (secret hex text, checkpoint names) for one case."""
    document = json.loads(cases_file.read_text(encoding="utf-8"))
    records = document.get("cases", []) if isinstance(document, dict) else document

    for record in records:
        if isinstance(record, dict) and record.get("name") == case_name:
            break
    else:
        raise SubjectUsageError(f"No case named {case_name!r}")

    secret = record.get("secret")
    if isinstance(secret, dict) and set(secret) == {"hex"}:
        secret = secret["hex"]
    if not isinstance(secret, str):
        raise SubjectUsageError("The reference subject only runs hex secrets")

    checkpoints = [entry["name"] for entry in record.get("checkpoints", [])]
    if not checkpoints:
        raise SubjectUsageError("Case declares no checkpoints")
    return secret, checkpoints


def _announce(name: str) -> bool:
    """Emit a checkpoint and block until resumed. False on EOF."""
    sys.stdout.write(format_checkpoint(name))
    sys.stdout.flush()
    return sys.stdin.buffer.read(1) != b""


def _hang() -> None:
    while True:
        time.sleep(3600)


def run(
    cases_file: Path,
    case_name: str,
    skip_zeroize: bool = False,
    hang_after: Optional[int] = None,
) -> int:
    secret_hex, checkpoints = _load_case(cases_file, case_name)

    with SecretArena() as arena:
        # Spare room after the secret keeps allocator bookkeeping off it
        secret = arena.allocate(len(secret_hex) + 32)
        length = secret.write_hex(secret_hex)
        print(
            f"secret ready ({length} bytes at {secret.address:#x}, "
            f"locked={secret.is_locked}, checksum {secret.checksum():08x})",
            flush=True,
        )

        for index, name in enumerate(checkpoints):
            if hang_after is not None and index >= hang_after:
                _hang()

            if index == 1:
                arena.release(secret, zeroize=not skip_zeroize)
                print("secret dropped", flush=True)

            if not _announce(name):
                print("harness went away", file=sys.stderr)
                return EXIT_PROTOCOL

        if len(checkpoints) == 1:
            arena.release(secret, zeroize=not skip_zeroize)

    print("Done!", flush=True)
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="memory-testing-subject",
        description="Reference subject for the zeroization harness.",
    )
    parser.add_argument("cases_file", type=Path)
    parser.add_argument("case_name")
    parser.add_argument(
        "--skip-zeroize",
        action="store_true",
        help="drop the secret without wiping it (simulates a broken destructor)",
    )
    parser.add_argument(
        "--hang-after",
        type=int,
        default=None,
        metavar="N",
        help="stop responding after N checkpoints",
    )
    args = parser.parse_args(argv)

    try:
        return run(args.cases_file, args.case_name, args.skip_zeroize, args.hang_after)
    except (OSError, ValueError, KeyError, TypeError, SubjectUsageError) as e:
        print(f"memory-testing-subject: {e}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
