"""
Case Registry
=============

Loads the declarative list of zeroization test cases from JSON.

File Format:
    {
      "cases": [
        {
          "name": "simple-zeroize",
          "secret": {"hex": "000102030405060708090a0b0c0d0e0f"},
          "checkpoints": [
            {"name": "after-construction", "expectation": "present"},
            {"name": "after-drop", "expectation": "absent"}
          ],
          "regions": ["heap", "stack", "anonymous"]
        }
      ]
    }

A top-level list of case records is accepted as well. Loading is a pure
parse: nothing is written and no subject is started.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from memory_testing.cases.models import CheckpointSpec, Expectation, TestCase
from memory_testing.cases.patterns import SecretDecodeError, decode_secret
from memory_testing.core.errors import ConfigError
from memory_testing.core.logging import get_secure_logger
from memory_testing.snapshot.model import DEFAULT_REGION_SCOPE, RegionClass
from memory_testing.utils.paths import sanitize_filename
from memory_testing.utils.validators import ValidationError, validate_string_safe


logger = get_secure_logger(__name__)

_CASE_KEYS = frozenset({"name", "secret", "checkpoints", "regions", "description"})


class MalformedConfig(ConfigError):
    """The case file is missing, not JSON, or not the expected shape."""
    pass


class InvalidCase(ConfigError):
    """A case record is well-formed JSON but not a usable test case."""
    pass


class DuplicateName(ConfigError):
    """Two cases (or two checkpoints) would share output artifacts."""
    pass


def load(path: str | Path) -> tuple[TestCase, ...]:
    """
    Load and validate all test cases from a JSON file.

    Args:
        path: Path to the case file

    Returns:
        Cases in file order

    Raises:
        MalformedConfig: If the file cannot be read or parsed
        InvalidCase: If a case record is invalid
        DuplicateName: If case names are not unique
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise MalformedConfig(f"Case file not found: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedConfig(f"Cannot read case file {path}: {e}") from e

    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedConfig(f"Case file {path} is not valid JSON: {e}") from e

    cases = parse(document)
    logger.info("Loaded %d case(s) from %s", len(cases), path)
    return cases


def parse(document: Any) -> tuple[TestCase, ...]:
    """Validate an already-decoded case document."""
    if isinstance(document, dict):
        if "cases" not in document:
            raise MalformedConfig("Case file must contain a 'cases' list")
        records = document["cases"]
    else:
        records = document

    if not isinstance(records, list):
        raise MalformedConfig("'cases' must be a list of case records")
    if not records:
        raise MalformedConfig("Case file declares no cases")

    cases = [_parse_case(index, record) for index, record in enumerate(records)]
    _check_unique(cases)
    return tuple(cases)


def _parse_case(index: int, record: Any) -> TestCase:
    if not isinstance(record, dict):
        raise MalformedConfig(f"Case #{index} is not an object")

    try:
        name = validate_string_safe(record.get("name"), max_length=200, field_name="name")
    except ValidationError as e:
        raise InvalidCase(f"Case #{index}: {e}") from e

    unknown = set(record) - _CASE_KEYS
    if unknown:
        raise InvalidCase(f"Unknown keys: {', '.join(sorted(unknown))}", case=name)

    try:
        secret = decode_secret(record.get("secret"))
    except SecretDecodeError as e:
        raise InvalidCase(f"Invalid secret: {e}", case=name) from e

    checkpoints = _parse_checkpoints(name, record.get("checkpoints"))
    regions = _parse_regions(name, record.get("regions"))

    try:
        return TestCase(name=name, secret=secret, checkpoints=checkpoints, regions=regions)
    except ValueError as e:
        raise InvalidCase(str(e), case=name) from e


def _parse_checkpoints(case_name: str, raw: Any) -> tuple[CheckpointSpec, ...]:
    if not isinstance(raw, list) or not raw:
        raise InvalidCase("A case needs a non-empty 'checkpoints' list", case=case_name)

    checkpoints = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise InvalidCase("Checkpoint entries must be objects", case=case_name)
        try:
            name = validate_string_safe(entry.get("name"), max_length=200, field_name="checkpoint name")
        except ValidationError as e:
            raise InvalidCase(str(e), case=case_name) from e
        # Announced as one "CHECKPOINT <name>" line, which the reader strips
        if name != name.strip() or "\n" in name or "\r" in name:
            raise InvalidCase(
                f"Checkpoint name {name!r} must be one line without surrounding whitespace",
                case=case_name,
            )
        try:
            expectation = Expectation(str(entry.get("expectation", "")).lower())
        except ValueError as e:
            raise InvalidCase(
                f"Expectation must be 'present' or 'absent', got {entry.get('expectation')!r}",
                case=case_name,
                checkpoint=name,
            ) from e
        checkpoints.append(CheckpointSpec(name=name, expectation=expectation))

    _check_file_names(case_name, [checkpoint.name for checkpoint in checkpoints], "checkpoint")
    return tuple(checkpoints)


def _parse_regions(case_name: str, raw: Any) -> frozenset[RegionClass]:
    if raw is None:
        return DEFAULT_REGION_SCOPE
    if not isinstance(raw, list) or not raw:
        raise InvalidCase("'regions' must be a non-empty list", case=case_name)
    try:
        return frozenset(RegionClass(str(value).lower()) for value in raw)
    except ValueError as e:
        known = ", ".join(member.value for member in RegionClass)
        raise InvalidCase(f"Unknown region class ({known} are allowed): {e}", case=case_name) from e


def _check_file_names(case_name: str, names: Iterable[str], what: str) -> None:
    seen: dict[str, str] = {}
    for name in names:
        try:
            file_name = sanitize_filename(name)
        except ValueError as e:
            raise InvalidCase(f"{what} name {name!r} cannot name a file: {e}", case=case_name) from e
        if file_name in seen:
            if seen[file_name] == name:
                raise InvalidCase(f"Duplicate {what} name: {name}", case=case_name)
            raise InvalidCase(
                f"{what} names {seen[file_name]!r} and {name!r} map to the same file",
                case=case_name,
            )
        seen[file_name] = name


def _check_unique(cases: list[TestCase]) -> None:
    seen: dict[str, str] = {}
    for case in cases:
        try:
            file_name = sanitize_filename(case.name)
        except ValueError as e:
            raise InvalidCase(f"Case name cannot name a directory: {e}", case=case.name) from e
        if file_name in seen:
            other = seen[file_name]
            if other == case.name:
                raise DuplicateName(f"Duplicate case name: {case.name}", case=case.name)
            raise DuplicateName(
                f"Case names {other!r} and {case.name!r} map to the same output directory",
                case=case.name,
            )
        seen[file_name] = case.name
