"""
Core module - Contains configuration, logging, and the error hierarchy.
"""

from memory_testing.core.config import HarnessConfig
from memory_testing.core.errors import ConfigError, HarnessError
from memory_testing.core.logging import (
    SecureLogFilter,
    configure_logging,
    get_secure_logger,
)

__all__ = [
    "HarnessConfig",
    "ConfigError",
    "HarnessError",
    "SecureLogFilter",
    "configure_logging",
    "get_secure_logger",
]
