"""
Structured JSON logging configuration.

Every line is one JSON object. Context travels two ways:
- `extra={...}` on ordinary logger calls
- log_with_context(), for alert-style records carrying arbitrary keys

The correlation id is the id of the queue job (worker) being processed, so
all lines written for one call attempt can be grouped.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from callengine.config import get_settings

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "extra_data"}

_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _context_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    extra_data = getattr(record, "extra_data", None)
    if isinstance(extra_data, dict):
        fields.update(extra_data)
    for key, value in vars(record).items():
        if key not in _RECORD_ATTRS:
            fields[key] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """JSON-like structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        for key, value in _context_fields(record).items():
            # Never let context shadow the envelope
            log_data[f"extra_{key}" if key in log_data else key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def get_logger(name: str) -> logging.Logger:
    """Module logger; output goes through the root handler set by setup_logging()."""
    return logging.getLogger(name)


def setup_logging(log_level: str | None = None) -> None:
    """Install the JSON handler on the root logger.

    Called once by each entry point (API lifespan, worker main).

    Args:
        log_level: Overrides LOG_LEVEL from settings.
    """
    level = (log_level or get_settings().log_level).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # SQLAlchemy noise control: opt-in verbose via SQLALCHEMY_LOG_LEVEL=INFO/DEBUG
    sqlalchemy_level = os.getenv("SQLALCHEMY_LOG_LEVEL", "").strip().upper() or "WARNING"
    for name in ("sqlalchemy.engine", "sqlalchemy.pool"):
        logging.getLogger(name).setLevel(sqlalchemy_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **extra: Any,
) -> None:
    """Log a message with extra context data.

    Unlike extra=, keys may collide with LogRecord attributes (e.g. "name").
    """
    if not logger.isEnabledFor(level):
        return
    record = logger.makeRecord(logger.name, level, "", 0, message, (), None)
    record.extra_data = extra  # type: ignore[attr-defined]
    logger.handle(record)


def mask_phone(phone: str | None) -> str:
    """Mask a phone number for logs, keeping the last four digits."""
    if not phone:
        return ""
    return f"***{phone[-4:]}"
