"""
Structured JSON logging utilities for the inventory hub.

Render, Fly and most container platforms ingest stdout line by line, so the
hub logs one JSON object per line when run in production. Every line carries
the connection context fields so log queries can follow one client.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Always present in JSON output, null outside a realtime session
CONTEXT_FIELDS = ("session_id", "remote", "user_id")

_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per record.

    Fixed fields: timestamp (record creation time, UTC), level, logger,
    message, and the connection context fields. Anything else passed via
    ``extra`` is appended after them.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            entry[name] = getattr(record, name, None)

        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and key not in entry and not key.startswith("_")
        )

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = None,
    json_format: bool = True,
) -> logging.Logger:
    """
    Configure logging for the hub process.

    Args:
        level: Logging level (default: INFO)
        logger_name: Specific logger to configure (default: root logger)
        json_format: Emit JSON lines; plain text when False (local development)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(StructuredJsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_sync_logger(name: str) -> logging.Logger:
    """Logger named ``inventory_sync.{name}``."""
    return logging.getLogger(f"inventory_sync.{name}")


class SessionLoggerAdapter(logging.LoggerAdapter):
    """
    Stamps the connection context of a hub session on every record.

    The context is read from the session on each call, so ``user_id`` shows
    up as soon as the client authenticates.
    """

    def __init__(self, logger: logging.Logger, session: Any):
        super().__init__(logger, {})
        self.session = session

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = {
            "session_id": self.session.session_id,
            "remote": getattr(self.session, "remote", None) or "unknown",
            "user_id": getattr(self.session, "user_id", None),
        }
        kwargs["extra"] = {**kwargs.get("extra", {}), **context}
        return msg, kwargs
