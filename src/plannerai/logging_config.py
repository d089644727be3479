"""Centralized logging configuration for the planner assistant."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone


class JsonFormatter(logging.Formatter):
    """Structured JSON log lines, one object per event."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        context = getattr(record, "ai_context", None)
        if context:
            entry["context"] = context
        elapsed = getattr(record, "execution_time_ms", None)
        if elapsed is not None:
            entry["executionTimeMs"] = elapsed
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text lines with the trace context appended as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {}
        context = getattr(record, "ai_context", None)
        if context:
            extras.update(context)
        elapsed = getattr(record, "execution_time_ms", None)
        if elapsed is not None:
            extras["executionTimeMs"] = elapsed
        if extras:
            line = f"{line}  {json.dumps(extras, default=str)}"
        return line


TEXT_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging() -> None:
    """Configure the root logger from PA_LOG_LEVEL / PA_LOG_FORMAT env vars.

    Safe to call multiple times; reconfigures on each call.
    """
    from plannerai.config import settings

    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = ContextTextFormatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT)

    # Replace existing handlers on the root logger
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Quiet noisy third-party loggers unless we're at DEBUG
    if level > logging.DEBUG:
        for name in ("aiosqlite", "aiomysql", "sqlalchemy.engine", "httpx", "httpcore"):
            logging.getLogger(name).setLevel(logging.WARNING)
