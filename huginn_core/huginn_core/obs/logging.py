from __future__ import annotations
import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone
from typing import Optional

from ..utils.paths import agent_log_file

# Structured fields copied from `extra={...}` into the JSON line
STRUCTURED_FIELDS = (
    "agent_id",
    "task_id",
    "kind",
    "loop",
    "duration_ms",
    "error_code",
    "status",
    "attempt",
    "delay_s",
    "endpoint",
    "event",
    "context",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in STRUCTURED_FIELDS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_logger(name: str = "huginn") -> logging.Logger:
    logger = logging.getLogger(name)
    root = logging.getLogger("huginn")
    if not root.handlers:
        h = logging.StreamHandler()
        h.setFormatter(JsonFormatter())
        root.addHandler(h)
        root.setLevel(logging.INFO)
    return logger


def configure_logging(level: str = "INFO", to_file: bool = False, filename: Optional[str] = None) -> logging.Logger:
    """
    Apply the configured level to the agent logger tree and optionally add a
    rotating JSON file handler under the log directory.
    """
    logger = get_logger("huginn")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if to_file:
        path = filename or agent_log_file()
        already = any(
            isinstance(h, logging.handlers.RotatingFileHandler) and h.baseFilename == os.path.abspath(path)
            for h in logger.handlers
        )
        if not already:
            fh = logging.handlers.RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
            fh.setFormatter(JsonFormatter())
            logger.addHandler(fh)
    return logger
