"""
Path Utilities
==============

Output-directory path handling for dump artifacts.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Final

from memory_testing.core.config import DUMP_SUFFIX

# Characters not allowed in filenames across all platforms
_UNSAFE_CHARS: Final[re.Pattern[str]] = re.compile(r'[<>:"/\\|?*\x00-\x1f\s]')


def sanitize_filename(filename: str, replacement: str = "_") -> str:
    """
    Sanitize a name so it can be used as a single path component.

    Args:
        filename: The name to sanitize
        replacement: Character to replace unsafe chars with

    Returns:
        Sanitized filename safe for all platforms

    Raises:
        ValueError: If nothing usable remains
    """
    if not filename:
        raise ValueError("Filename cannot be empty")

    sanitized = _UNSAFE_CHARS.sub(replacement, filename)

    # Leading dots would hide the file or walk up the tree
    sanitized = sanitized.strip(". ")

    if not sanitized:
        raise ValueError("Filename becomes empty after sanitization")

    max_length = 200
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized


def is_path_within_directory(path: Path, directory: Path) -> bool:
    """Check if a path is safely within a directory (prevents path traversal)."""
    try:
        return path.resolve().is_relative_to(directory.resolve())
    except (ValueError, RuntimeError):
        return False


def dump_path(output_dir: Path, case_name: str, checkpoint_name: str) -> Path:
    """
    Location of the dump for one (case, checkpoint) pair.

    Layout is ``<output>/<case>/<checkpoint>.dump``; one directory per case
    keeps names from two cases from ever colliding.
    """
    path = output_dir / sanitize_filename(case_name) / (sanitize_filename(checkpoint_name) + DUMP_SUFFIX)
    if not is_path_within_directory(path, output_dir):
        raise ValueError(f"Dump path escapes output directory: {path}")
    return path
