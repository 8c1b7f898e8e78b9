"""
Secure Logging Module
=====================

Provides harness logging that can never leak a secret pattern.

Every case carries the bytes of a secret, and the harness handles them in
hex/base64 form while parsing the case file. The filter here redacts long
hex and base64 runs from every record, so a stray debug line cannot turn
the log file into a copy of the secret.

Features:
- Automatic secret filtering on every handler
- Rotating log file in the output directory
- Optional JSON (structured) file output
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, Optional, Pattern


_SENSITIVE_PATTERNS: Final[list[tuple[str, Pattern[str]]]] = [
    ("secret", re.compile(r'(?i)(secret|password|salt)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    # Hex runs of 8 bytes or more (addresses are shorter than this)
    ("hex", re.compile(r'(?i)\b(?:0x)?[a-f0-9]{17,}\b')),
    ("base64", re.compile(r'[A-Za-z0-9+/]{24,}={0,2}')),
]

_REDACTED_TEXT: Final[str] = "[REDACTED]"

CONSOLE_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT: Final[str] = (
    "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"
)

ROOT_LOGGER_NAME: Final[str] = "memory_testing"


class SecureLogFilter(logging.Filter):
    """
    Log filter that removes secret material from log messages.

    Scans the message and its arguments for hex or base64 runs long
    enough to be key material and replaces them with [REDACTED].
    """

    def __init__(self, name: str = "", additional_patterns: Optional[list[Pattern[str]]] = None) -> None:
        super().__init__(name)
        self._additional_patterns = additional_patterns or []

    def filter(self, record: logging.LogRecord) -> bool:
        """Sanitize the record in place; never drops it."""
        if record.msg and isinstance(record.msg, str):
            record.msg = self._sanitize(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._sanitize(v) if isinstance(v, str) else v
                               for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self._sanitize(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True

    def _sanitize(self, text: str) -> str:
        result = text
        for name, pattern in _SENSITIVE_PATTERNS:
            result = pattern.sub(f"{name}={_REDACTED_TEXT}", result)
        for pattern in self._additional_patterns:
            result = pattern.sub(_REDACTED_TEXT, result)
        return result


class StructuredLogFormatter(logging.Formatter):
    """Formatter that outputs one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class SecureRotatingFileHandler(RotatingFileHandler):
    """Rotating file handler that creates its directory first."""

    def __init__(
        self,
        filename: str | Path,
        mode: str = "a",
        maxBytes: int = 10 * 1024 * 1024,
        backupCount: int = 3,
        encoding: str = "utf-8",
    ) -> None:
        log_path = Path(filename).resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            str(log_path),
            mode=mode,
            maxBytes=maxBytes,
            backupCount=backupCount,
            encoding=encoding,
        )


def get_secure_logger(name: str) -> logging.Logger:
    """
    Get a harness logger.

    Loggers are children of the ``memory_testing`` logger, so handlers
    installed by configure_logging() apply to all of them.

    Args:
        name: Logger name (typically __name__)
    """
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def configure_logging(
    log_file: Optional[Path] = None,
    level: str = "INFO",
    enable_console: bool = True,
    enable_json: bool = False,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure the harness logger with secure defaults.

    Called once at startup by the command-line entry points. Calling it
    again replaces the previous handlers.

    Args:
        log_file: Log file path (no file logging when None)
        level: Logging level
        enable_console: Whether to log to stderr
        enable_json: Whether the file handler writes JSON lines
        max_file_size: Maximum log file size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The configured ``memory_testing`` logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    secure_filter = SecureLogFilter()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
        console_handler.addFilter(secure_filter)
        logger.addHandler(console_handler)

    if log_file is not None:
        file_handler = SecureRotatingFileHandler(
            filename=log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
        )
        file_handler.setLevel(logging.DEBUG)
        if enable_json:
            file_handler.setFormatter(StructuredLogFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        file_handler.addFilter(secure_filter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
