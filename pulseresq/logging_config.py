"""
Logging configuration.

Provides:
    * JSON-formatted logs for deployments (one object per line)
    * Readable console logs for local runs and the example scenario

Modules log through ``logging.getLogger(__name__)`` and attach escalation
context with ``extra=``::

    logger.info("Batch started", extra={"session_id": sid, "batch_index": 0})

The JSON formatter copies those fields into the log entry.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

ESCALATION_FIELDS = ("session_id", "facility_id", "channel", "batch_index", "outcome")


class JSONFormatter(logging.Formatter):
    """Machine-parseable JSON log output."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in ESCALATION_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable single-line format with the session id when present."""

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%H:%M:%S")
        session_id = getattr(record, "session_id", None)
        ctx = f" [{str(session_id)[:8]}]" if session_id else ""
        formatted = f"{ts} {record.levelname:8s}{ctx} {record.name}: {record.getMessage()}"

        if record.exc_info and record.exc_info[1]:
            formatted += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"

        return formatted


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """Configure the root logger.  Replaces any existing root handlers."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
    root.addHandler(handler)

    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)
