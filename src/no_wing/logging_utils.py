"""Logging helpers for the no-wing tools."""

from __future__ import annotations

import logging
import re
import sys
import threading
from pathlib import Path

from no_wing.config import load_settings

_logging_configured = False
_logging_lock = threading.Lock()

_logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Control character pattern for log injection prevention.
_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


def sanitize_log_value(value: object) -> str:
    """Replace control characters (newlines, tabs, etc.) to prevent log injection."""
    return _CONTROL_CHAR_RE.sub("_", str(value))


def configure_logging(level: str | None = None) -> None:
    """Configure structured logging for the CLI and library callers."""
    global _logging_configured

    settings = load_settings()
    level_name = level or settings.logging.level
    resolved_level = getattr(logging, level_name.upper(), logging.WARNING)

    handlers: list[logging.Handler] = []

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    handlers.append(stream_handler)

    if settings.logging.file:
        try:
            Path(settings.logging.file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(settings.logging.file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
            handlers.append(file_handler)
        except OSError as exc:
            _logger.warning("Failed to open log file %s: %s", settings.logging.file, exc)

    logging.basicConfig(level=resolved_level, handlers=handlers, force=True)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    if not _logging_configured:
        with _logging_lock:
            if not _logging_configured:
                configure_logging()
    return logging.getLogger(name)
