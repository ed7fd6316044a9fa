"""
Logging setup for Subgraph Sync.

Provides structured logging with:
- Rich colored console output on stderr
- File logging with rotation
- JSON format option carrying per-event fields
"""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler


# Log output goes to stderr so `sync --json` keeps stdout clean
console = Console(stderr=True)

logger = logging.getLogger("subgraph_sync")

PLAIN_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Per-request chatter from the HTTP stack
NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    format_style: str = "rich",
    max_file_size_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """
    Configure the ``subgraph_sync`` logger hierarchy.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path of a rotating log file
        format_style: "rich", "json", or "simple"; a log file uses JSON when
            the style is "json" and the plain format otherwise
        max_file_size_mb: Size at which the log file rotates
        backup_count: Number of rotated files to keep
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(log_level)

    logger.addHandler(_console_handler(format_style))
    if log_file:
        logger.addHandler(_file_handler(Path(log_file), format_style, max_file_size_mb, backup_count))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def _console_handler(format_style: str) -> logging.Handler:
    if format_style == "rich":
        handler: logging.Handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler

    handler = logging.StreamHandler(sys.stderr)
    if format_style == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _file_handler(path: Path, format_style: str, max_file_size_mb: int, backup_count: int) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=max_file_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    if format_style == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=DATE_FORMAT))
    return handler


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": getattr(record, "event", None) or record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        fields = getattr(record, "fields", None)
        if fields:
            log_data.update(fields)

        return json.dumps(log_data, default=str)


def get_logger(name: str = "subgraph_sync") -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


def format_fields(fields: dict[str, Any]) -> str:
    """Render fields as space separated key=value pairs."""
    return " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)


def log_event(
    log: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """
    Log an event with structured fields.

    Console formats show ``event key=value ...``; the JSON format emits the
    fields as top-level keys.
    """
    if not log.isEnabledFor(level):
        return
    rendered = format_fields(fields)
    message = f"{event} {rendered}" if rendered else event
    log.log(level, message, extra={"event": event, "fields": fields})
