"""
Scan module - Exact pattern search over captured memory.
"""

from memory_testing.scan.coalesce import Run, Span, coalesce_regions
from memory_testing.scan.scanner import (
    Occurrence,
    ScanResult,
    find_occurrences,
    scan,
    scan_file,
)

__all__ = [
    "Run",
    "Span",
    "coalesce_regions",
    "Occurrence",
    "ScanResult",
    "find_occurrences",
    "scan",
    "scan_file",
]
