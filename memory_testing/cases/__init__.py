"""
Case Registry - Declarative zeroization test cases.
"""

from memory_testing.cases.models import CheckpointSpec, Expectation, TestCase
from memory_testing.cases.patterns import SecretDecodeError, decode_secret
from memory_testing.cases.registry import (
    DuplicateName,
    InvalidCase,
    MalformedConfig,
    load,
    parse,
)

__all__ = [
    "CheckpointSpec",
    "Expectation",
    "TestCase",
    "SecretDecodeError",
    "decode_secret",
    "DuplicateName",
    "InvalidCase",
    "MalformedConfig",
    "load",
    "parse",
]
