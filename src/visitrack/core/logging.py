from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# extra= keys copied into the JSON payload when present on the record
CONTEXT_KEYS = (
    "feature",
    "op",
    "kind",
    "key",
    "visitor_id",
    "session_id",
    "reason",
    "backend",
    "path",
    "scanned",
    "deactivated",
    "deleted",
    "failed",
    "duration_ms",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts_utc": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # attach extra fields if present
        for key in CONTEXT_KEYS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger  # avoid double handlers in tests

    logger.setLevel(level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def set_level(level: str) -> None:
    """Apply a level to every visitrack logger created so far."""
    for name, logger in logging.root.manager.loggerDict.items():
        if name.startswith("visitrack") and isinstance(logger, logging.Logger):
            logger.setLevel(level.upper())
