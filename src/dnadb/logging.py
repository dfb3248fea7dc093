"""
dnadb logging infrastructure.

Two outputs share the ``dnadb`` root logger:

- Primary file: .dnadb/logs/dnadb.log (JSONL, one complete JSON object per
  line with timestamp, level, component, message and structured context)
- Console output for human monitoring

Modules log through ``logging.getLogger(__name__)``; anything below
``dnadb.`` inherits these handlers once :func:`setup_logging` has run.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

ROOT_LOGGER_NAME = "dnadb"
LOG_FILE_NAME = "dnadb.log"

_LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _component_for(record: logging.LogRecord) -> str:
    component = getattr(record, "component", None)
    if component:
        return str(component)
    # dnadb.sql.module -> SQL
    parts = record.name.split(".")
    return parts[1].upper() if len(parts) > 1 else "DNADB"


# =============================================================================
# JSONL Formatter
# =============================================================================


class JSONLFormatter(logging.Formatter):
    """
    Formats log records as JSON Lines.

    Example output:
    {"timestamp":"2024-01-15T10:30:45.123Z","level":"WARNING","component":"SQL","message":"Slow query","context":{"duration_ms":1520.4}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "component": _component_for(record),
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        # Source location for warnings and above
        if record.levelno >= logging.WARNING:
            source_info: dict[str, Any] = {}
            if record.pathname:
                source_info["file"] = record.pathname
            if record.lineno:
                source_info["line"] = record.lineno
            if record.funcName and record.funcName != "<module>":
                source_info["function"] = record.funcName
            if source_info:
                entry["source"] = source_info

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    One plain line per record for stdout.

    ``12:04:31 SQL WARNING Slow query (1520.4ms) duration_ms=1520.4``. INFO
    records omit the level; structured context is appended as key=value.
    """

    def format(self, record: logging.LogRecord) -> str:
        parts = [datetime.fromtimestamp(record.created).strftime("%H:%M:%S"), _component_for(record)]
        if record.levelno != logging.INFO:
            parts.append(record.levelname)
        parts.append(record.getMessage())
        context = getattr(record, "context", None)
        if context:
            parts.extend(f"{key}={value}" for key, value in context.items())

        line = " ".join(parts)
        if record.exc_info and record.exc_info[0]:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# =============================================================================
# Logger Setup
# =============================================================================


_log_dir: Path | None = None


def setup_logging(
    log_dir: Path | str = ".dnadb/logs",
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,  # 5MB
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """
    Initialize the logging infrastructure.

    Args:
        log_dir: Directory for log files
        level: Minimum log level
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated files to keep
        console: Also log human-readable lines to stdout

    Returns:
        Path to the log directory
    """
    global _log_dir

    _log_dir = Path(log_dir)
    _log_dir.mkdir(parents=True, exist_ok=True)

    log_file = _log_dir / LOG_FILE_NAME
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(JSONLFormatter())
    file_handler.setLevel(level)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ConsoleFormatter())
        console_handler.setLevel(level)
        root_logger.addHandler(console_handler)

    root_logger.addHandler(file_handler)

    root_logger.info(
        "dnadb logging initialized",
        extra={
            "component": "DNADB",
            "context": {"log_format": "jsonl", "log_file": str(log_file)},
        },
    )

    return _log_dir


def apply_log_level(logger: logging.Logger, level: str | int | None) -> None:
    """Apply a config-style level ("debug", "info", "warn", "error") to a logger."""
    if level is None:
        return
    if isinstance(level, str):
        level = _LEVEL_NAMES.get(level.lower(), logging.INFO)
    logger.setLevel(level)


# =============================================================================
# Contextual Logging
# =============================================================================


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    **kwargs: Any,
) -> None:
    """
    Log a message with structured context data.

    Args:
        logger: Logger instance
        level: Logging level (logging.INFO, logging.ERROR, etc.)
        message: Human-readable message
        context: Structured context data (included in JSONL output)
        **kwargs: Additional context items
    """
    extra = {"context": {**(context or {}), **kwargs}} if (context or kwargs) else {}
    logger.log(level, message, extra=extra)


def get_log_file() -> Path | None:
    """Get the path to the main log file."""
    if _log_dir:
        return _log_dir / LOG_FILE_NAME
    return None
