"""
Structured logging setup.

Two formats are supported: a readable single-line format for local work and a JSON
format (one object per line) for log aggregation. Level and format come from
``settings.log_level`` / ``settings.log_format`` unless passed explicitly.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from .config import settings

EXTRA_KEYS = (
    "user_id",
    "project_id",
    "entity",
    "entity_id",
    "action",
    "event_type",
    "error_code",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        extras = " ".join(
            f"{key}={getattr(record, key)}" for key in EXTRA_KEYS if getattr(record, key, None) is not None
        )
        line = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        if extras:
            line = f"{line} [{extras}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    level_name = (level or settings.log_level or "INFO").upper()
    resolved_level = getattr(logging, level_name, logging.INFO)
    use_json = (fmt or settings.log_format or "readable").lower() == "json"

    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else ReadableFormatter())
    handler.setLevel(resolved_level)
    root.addHandler(handler)
    root.setLevel(resolved_level)

    for noisy in ("sqlalchemy.engine", "httpx", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: level=%s format=%s", level_name, "json" if use_json else "readable"
    )
