"""
Validation Utilities
====================

Input validation helpers for the case file and the command line.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class ValidationError(ValueError):
    """Raised when validation fails."""
    pass


def validate_string_safe(
    value: Any,
    min_length: int = 0,
    max_length: int = 1000,
    allow_empty: bool = False,
    field_name: str = "value",
) -> str:
    """
    Validate a string value.

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")

    if not allow_empty and not value:
        raise ValidationError(f"{field_name} cannot be empty")

    if len(value) < min_length:
        raise ValidationError(
            f"{field_name} must be at least {min_length} characters"
        )

    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} must be at most {max_length} characters"
        )

    if "\x00" in value:
        raise ValidationError(f"{field_name} contains invalid characters")

    return value


def validate_executable(path: str | Path) -> Path:
    """
    Validate that a subject path points at a regular file.

    Executability is not checked here: ``.py`` subjects are run through
    the interpreter, and a missing execute bit surfaces as a spawn error
    for each case.
    """
    try:
        resolved = Path(path).expanduser().resolve()
    except (ValueError, RuntimeError) as e:
        raise ValidationError(f"Invalid subject path: {e}") from e

    if not resolved.is_file():
        raise ValidationError(f"Subject binary does not exist: {resolved}")

    return resolved
