"""
memory-testing - A Zeroization Test Harness
===========================================

Runs an instrumented subject through declared checkpoints, dumps its
memory at each one, and checks whether a known secret is still there.

Security Notice:
- Secret patterns never reach a log line or the run report
- A dump that could not be fully captured is never read as "absent"
- Artifacts are never overwritten
"""

from memory_testing.core.config import HarnessConfig
from memory_testing.core.logging import get_secure_logger

__version__ = "0.1.0"
__author__ = "memory-testing developers"

__all__ = ["HarnessConfig", "get_secure_logger", "__version__"]
