"""Structured logging configuration.

The HTTP server and the worker usually run as separate processes against
the same data directory, so each role writes its own rotating file.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


class JsonFormatter(logging.Formatter):
    """JSON log formatter carrying the event name and context dict."""

    def __init__(self, role: str | None = None) -> None:
        super().__init__()
        self.role = role

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "pid": record.process,
        }
        if self.role:
            payload["role"] = self.role
        event = getattr(record, "event", None)
        if event:
            payload["event"] = event
        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def log_path(logs_dir: Path, role: str) -> Path:
    return logs_dir / f"photolessons-{role}.log"


def setup_logging(logs_dir: Path, role: str = "app", level: int | None = None) -> Path:
    """Configure logging to stdout and a per-role file; returns the file path.

    The level defaults to PHOTOLESSONS_LOG_LEVEL, or INFO.
    """

    logs_dir.mkdir(parents=True, exist_ok=True)
    logfile = log_path(logs_dir, role)
    if level is None:
        level = logging.getLevelName(os.getenv("PHOTOLESSONS_LOG_LEVEL", "INFO").upper())
        if not isinstance(level, int):
            level = logging.INFO

    formatter = JsonFormatter(role)
    logger = logging.getLogger()
    logger.setLevel(level)

    file_handler = RotatingFileHandler(logfile, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    logger.handlers.clear()
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logfile
