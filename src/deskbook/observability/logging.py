"""Structured JSON logging with correlation ID support.

Engine modules log through ``logging.getLogger(__name__)`` and pass context
as ``extra={"extra_fields": {...}}``; ``configure_logging`` attaches the
JSON formatter to the package logger.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

from .correlation import get_correlation_id

PACKAGE_LOGGER = "deskbook"


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, context."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_obj.update(extra_fields)

        # Decimal amounts and dates render through str()
        return json.dumps(log_obj, default=str)


def get_logger(name: str = PACKAGE_LOGGER, stream: TextIO | None = None) -> logging.Logger:
    """Get a logger configured for JSON output."""
    logger = logging.getLogger(name)

    # Only configure if no handlers (avoid duplicate handlers)
    if not logger.handlers:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False

    return logger


def configure_logging(level: int | str = logging.INFO, stream: TextIO | None = None) -> logging.Logger:
    """Route every ``deskbook.*`` logger through the JSON formatter at *level*."""
    logger = get_logger(PACKAGE_LOGGER, stream)
    logger.setLevel(level)
    return logger
