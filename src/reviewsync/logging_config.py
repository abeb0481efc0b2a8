"""Structured logging configuration for reviewsync.

- JSON structured logging with StructuredFormatter
- Logger hierarchy under the reviewsync namespace
- Environment variable control (REVIEWSYNC_LOG_LEVEL, REVIEWSYNC_LOG_FORMAT)
"""

import json
import logging
import os
from datetime import datetime, timezone

# Keys redacted from structured log context
SENSITIVE_KEYS = {
    "password", "token", "secret", "apikey", "api_key",
    "authorization", "credential", "auth", "key", "bearer",
}

ROOT_LOGGER = "reviewsync"

_STANDARD_FIELDS = {
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
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter.

    Outputs one JSON object per record with:
    - timestamp: UTC ISO 8601 format with 'Z' suffix
    - level: Log level name (INFO, ERROR, etc.)
    - logger: Logger name (reviewsync hierarchy)
    - message: Log message
    - context: Extras dict merged from LogRecord attributes
    - exception: Formatted traceback, when the record carries one

    Sensitive keys (password, token, ...) are redacted from the context.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: LogRecord to format

        Returns:
            JSON string with structured log data
        """
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            k: ("[REDACTED]" if k.lower() in SENSITIVE_KEYS else v)
            for k, v in record.__dict__.items()
            if k not in _STANDARD_FIELDS and not k.startswith("_")
        }

        if extras:
            log_data["context"] = extras

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for local runs."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure logging for all reviewsync loggers.

    Args:
        level: Optional log level override. Falls back to REVIEWSYNC_LOG_LEVEL
               (default: INFO).
        log_format: Optional format override (json or text). Falls back to
               REVIEWSYNC_LOG_FORMAT (default: json).
    """
    if level is None:
        level = os.getenv("REVIEWSYNC_LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format is None:
        log_format = os.getenv("REVIEWSYNC_LOG_FORMAT", "json")

    if log_format.lower() == "text":
        formatter: logging.Formatter = TextFormatter()
    else:
        formatter = StructuredFormatter()

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)

    # Idempotent: reuse the existing handler, only swap its formatter
    if logger.handlers:
        for handler in logger.handlers:
            handler.setFormatter(formatter)
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
