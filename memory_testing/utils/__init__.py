"""
Utils module - Path and validation helpers.
"""

from memory_testing.utils.paths import dump_path, is_path_within_directory, sanitize_filename
from memory_testing.utils.validators import (
    ValidationError,
    validate_executable,
    validate_string_safe,
)

__all__ = [
    "dump_path",
    "is_path_within_directory",
    "sanitize_filename",
    "ValidationError",
    "validate_executable",
    "validate_string_safe",
]
