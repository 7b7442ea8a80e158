"""
Structured JSON logging for the fact memory.

Ingestion runs as batch jobs whose logs are usually shipped to a log
aggregator, so records are emitted as one JSON object per line with any
``extra`` context (chapter_id, fact counts, ...) promoted to top-level keys.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    {
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
)


class StructuredJsonFormatter(logging.Formatter):
    """
    Render log records as single-line JSON.

    Fields:
    - timestamp: ISO 8601 in UTC
    - level, logger, message
    - exception: formatted traceback when present
    - any extra context passed by the caller
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        entry.update(context)
        # Values json cannot encode are rendered with str()
        return json.dumps(entry, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = None,
) -> logging.Logger:
    """
    Replace a logger's handlers with one JSON handler on stdout.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: root logger)

    Returns:
        The configured logger
    """
    target = logging.getLogger(logger_name)
    for existing in list(target.handlers):
        target.removeHandler(existing)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(StructuredJsonFormatter())
    target.addHandler(stream)
    target.setLevel(level)
    return target


def get_memory_logger(name: str) -> logging.Logger:
    """Return the ``fact_memory.{name}`` logger."""
    return logging.getLogger(f"fact_memory.{name}")


class MemoryLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps chapter context onto every record.

    Example:
        log = MemoryLoggerAdapter(logger, {"chapter_id": chapter_id})
        log.info("Reconciled chapter facts")
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra", {}))
        kwargs["extra"] = extra
        return msg, kwargs
