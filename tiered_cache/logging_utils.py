"""Structured JSON event logging for cache alerts and invalidation audit."""

import json
import logging
import time
from typing import Any


class StructuredLogger:
    """Emits one JSON object per event through a standard ``logging`` logger."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, event: str, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        record = {
            "ts": round(time.time(), 3),
            "level": logging.getLevelName(level),
            "event": event,
            **fields,
        }
        try:
            self.logger.log(level, json.dumps(record, separators=(",", ":"), default=str))
        except (TypeError, ValueError) as err:
            self.logger.log(level, f"LOG_SERIALIZE_ERROR event={event} error={err}")

    def debug(self, event: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._log(logging.ERROR, event, **fields)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance for a specific module."""
    return StructuredLogger(name)
