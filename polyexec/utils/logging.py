"""Structured logging utilities."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any


def get_logger(name: str = "polyexec") -> logging.Logger:
    """Return a logger configured to emit JSON formatted messages.

    If the environment variable ``LOG_FILE`` is set, logs are also written to a
    rotating file handler with size and backup limits controlled by
    ``LOG_MAX_BYTES`` and ``LOG_BACKUP_COUNT``. The console handler always
    emits plain JSON lines suitable for log ingestion.
    """

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger.setLevel(getattr(logging, level, logging.INFO))

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(stream_handler)

    log_path = os.getenv("LOG_FILE")
    if log_path:
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        max_bytes = int(os.getenv("LOG_MAX_BYTES", "10485760"))  # 10 MB
        backup_count = int(os.getenv("LOG_BACKUP_COUNT", "5"))
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(file_handler)

    return logger


def _json_default(o: Any):
    """Best-effort JSON serializer for enums, bytes, datetimes and sets."""
    if isinstance(o, Enum):
        return o.value
    if isinstance(o, (bytes, bytearray)):
        return "0x" + bytes(o).hex()
    if isinstance(o, datetime):
        return o.isoformat()
    if isinstance(o, (set, frozenset)):
        return sorted(o, key=str)
    return str(o)


def log_json(logger: logging.Logger, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
    """Emit a structured JSON log entry."""

    payload = {"event": event, **kwargs}
    logger.log(level, json.dumps(payload, default=_json_default))


__all__ = ["get_logger", "log_json"]
