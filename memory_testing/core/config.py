"""
Harness Configuration Module
============================

Provides immutable, environment-aware configuration for the dump harness.

Features:
- Immutable configuration after initialization
- Environment variable override support (MEMORY_TESTING_ prefix)
- Secret patterns are never accepted from the environment
- Type-safe configuration access
"""

from __future__ import annotations

import hashlib
import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Final, Any, Optional

from memory_testing.core.errors import ConfigError


ENV_PREFIX: Final[str] = "MEMORY_TESTING"

CASES_FILE_NAME: Final[str] = "cases.json"
REPORT_FILE_NAME: Final[str] = "report.json"
LOG_FILE_NAME: Final[str] = "capture-dumps.log"
DUMP_SUFFIX: Final[str] = ".dump"

CAPTURE_BACKENDS: Final[frozenset[str]] = frozenset({"procfs", "gcore"})

# Keys that could carry secret material must come from the cases file only
_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "key", "token", "pattern", "salt",
})


def _is_sensitive_key(key: str) -> bool:
    """Check if a configuration key might contain sensitive data."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _get_default_cases_file() -> Path:
    """The cases file lives next to the harness executable."""
    harness = Path(sys.argv[0] or ".").resolve()
    base = harness.parent if harness.suffix or harness.is_file() else harness
    return base / CASES_FILE_NAME


@dataclass(frozen=True, slots=True)
class PathConfig:
    """Immutable path configuration."""

    cases_file: Path = field(default_factory=_get_default_cases_file)

    def __post_init__(self) -> None:
        if not self.cases_file.is_absolute():
            raise ValueError(f"cases_file must be an absolute path: {self.cases_file}")


@dataclass(frozen=True, slots=True)
class CaptureConfig:
    """Immutable capture configuration."""

    backend: str = "procfs"
    checkpoint_timeout_seconds: float = 30.0
    # How long a subject gets to stop after SIGSTOP, and to exit after the last resume
    suspend_timeout_seconds: float = 5.0
    exit_timeout_seconds: float = 10.0
    read_chunk_bytes: int = 4 * 1024 * 1024
    gdb_path: str = "gdb"

    def __post_init__(self) -> None:
        if self.backend not in CAPTURE_BACKENDS:
            raise ValueError(f"Unknown capture backend: {self.backend}")
        if self.checkpoint_timeout_seconds <= 0:
            raise ValueError("Checkpoint timeout must be positive")
        if self.suspend_timeout_seconds <= 0 or self.exit_timeout_seconds <= 0:
            raise ValueError("Suspend and exit timeouts must be positive")
        if self.read_chunk_bytes < 4096:
            raise ValueError("Read chunk must be at least one page")


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Immutable scheduling configuration."""

    jobs: int = 1

    def __post_init__(self) -> None:
        if self.jobs < 1:
            raise ValueError("jobs must be at least 1")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Immutable logging configuration."""

    level: str = "INFO"
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10 MB
    backup_count: int = 3
    enable_console: bool = True
    enable_file: bool = True
    enable_json: bool = False

    def __post_init__(self) -> None:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {self.level}")


class HarnessConfig:
    """
    Centralized, immutable configuration with environment override support.

    Usage:
        config = HarnessConfig.load()
        timeout = config.capture.checkpoint_timeout_seconds
        config = config.with_overrides(capture={"backend": "gcore"})
    """

    __slots__ = ("_paths", "_capture", "_run", "_logging", "_frozen", "_config_hash")

    def __init__(
        self,
        paths: Optional[PathConfig] = None,
        capture: Optional[CaptureConfig] = None,
        run: Optional[RunConfig] = None,
        logging: Optional[LoggingConfig] = None,
    ) -> None:
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_paths", paths or PathConfig())
        object.__setattr__(self, "_capture", capture or CaptureConfig())
        object.__setattr__(self, "_run", run or RunConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _compute_hash(self) -> str:
        config_str = f"{self._paths}|{self._capture}|{self._run}|{self._logging}"
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def paths(self) -> PathConfig:
        return self._paths

    @property
    def capture(self) -> CaptureConfig:
        return self._capture

    @property
    def run(self) -> RunConfig:
        return self._run

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def config_hash(self) -> str:
        """Configuration fingerprint, recorded in the run report."""
        return self._config_hash

    @classmethod
    def load(cls, env_prefix: str = ENV_PREFIX) -> HarnessConfig:
        """
        Load configuration with environment variable overrides.

        Environment variables use the prefix and double underscores for
        nested values.

        Examples:
            MEMORY_TESTING_LOGGING__LEVEL=DEBUG
            MEMORY_TESTING_CAPTURE__CHECKPOINT_TIMEOUT_SECONDS=5
            MEMORY_TESTING_PATHS__CASES_FILE=/etc/memory-testing/cases.json

        Raises:
            ConfigError: If an override has the wrong type or is out of range
        """
        env_overrides = cls._parse_env_overrides(env_prefix)

        sections: dict[str, dict[str, Any]] = {
            "paths": {}, "capture": {}, "run": {}, "logging": {},
        }
        for dotted, value in env_overrides.items():
            section, _, key = dotted.partition(".")
            if section in sections and key:
                sections[section][key] = value

        return cls().with_overrides(**sections)

    def with_overrides(self, **sections: dict[str, Any]) -> HarnessConfig:
        """
        Return a copy with the given per-section values replaced.

        Values may be strings (from the environment or the command line);
        they are coerced to the type of the field they replace.
        """
        current = {
            "paths": self._paths,
            "capture": self._capture,
            "run": self._run,
            "logging": self._logging,
        }
        try:
            for section, values in sections.items():
                if section not in current:
                    raise ConfigError(f"Unknown configuration section: {section}")
                if not values:
                    continue
                base = current[section]
                coerced = {
                    key: _coerce(getattr(base, key), value, f"{section}.{key}")
                    for key, value in values.items()
                    if value is not None
                }
                current[section] = replace(base, **coerced)
        except (AttributeError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        return HarnessConfig(**current)

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if key.startswith(prefix_upper):
                config_key = key[len(prefix_upper):].lower().replace("__", ".")
                if _is_sensitive_key(config_key):
                    continue
                overrides[config_key] = value

        return overrides

    def __repr__(self) -> str:
        return f"HarnessConfig(hash={self._config_hash}, backend={self._capture.backend})"

    def __setattr__(self, name: str, value: Any) -> None:
        if hasattr(self, "_frozen") and self._frozen:
            raise AttributeError("HarnessConfig is immutable after initialization")
        super().__setattr__(name, value)


def _coerce(current: Any, value: Any, name: str) -> Any:
    """Coerce an override to the type of the value it replaces."""
    if not isinstance(value, str):
        return value
    if isinstance(current, bool):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"{name} must be a boolean, got {value!r}")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, Path):
        return Path(value).expanduser().resolve()
    return value
