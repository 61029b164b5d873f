"""
Logging setup for the database upgrade orchestrator.

Two outputs are configured on the ``dbupgrade`` logger:

- An append-only log file, one line per record formatted as
  ``[timestamp] [SEVERITY] message``. External automation parses this file
  to learn the outcome of an unattended run.
- Standard output, either JSON-formatted (machine-readable, with any
  ``extra`` fields) or plain text for interactive use.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dbupgrade.config import LoggingConfig

ROOT_LOGGER_NAME = "dbupgrade"

# Default log format for plain-text stdout
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_STANDARD_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
}


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each log record is formatted as a JSON object with consistent fields:
    - timestamp: ISO 8601 formatted timestamp in UTC
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - logger: Logger name
    - message: Log message
    - Additional fields from the record's extra dict
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON-formatted string representation of the log record.
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _STANDARD_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class LineFormatter(logging.Formatter):
    """
    Formats records as ``[timestamp] [SEVERITY] message``.

    The timestamp is local time with second precision. Exception tracebacks,
    when present, follow on the next lines.
    """

    TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

    def format(self, record: logging.LogRecord) -> str:
        """Format the record as a single log file line."""
        timestamp = datetime.fromtimestamp(record.created).strftime(self.TIME_FORMAT)
        line = f"[{timestamp}] [{record.levelname}] {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    log_file: Path | str | None = None,
    json_format: bool = False,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Configure the logging system for the orchestrator.

    Args:
        config: Optional LoggingConfig object with logging settings.
            If provided, overrides the keyword parameters.
        level: Log level if no config is provided.
        log_file: Append-only log file path if no config is provided.
        json_format: Whether stdout uses JSON formatting.
        log_to_stdout: Whether to log to stdout.

    Returns:
        The ``dbupgrade`` logger.

    Example:
        >>> from dbupgrade.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG", log_file="/tmp/dbupgrade.log")
        >>> logger.info("Upgrade started", extra={"target_version": "15.12.0"})
    """
    if config is not None:
        level = config.level
        log_file = config.file_path
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout

    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(LineFormatter())
        logger.addHandler(file_handler)

    if log_to_stdout:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)
        if json_format:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        logger.addHandler(handler)

    # Prevent propagation to root logger to avoid duplicate logs
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "dbupgrade." prefix is added automatically if not present.

    Returns:
        A logger in the ``dbupgrade`` hierarchy.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
