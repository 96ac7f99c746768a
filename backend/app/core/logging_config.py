"""
Logging for the alert service: one stdout handler on the root logger.

Production emits one JSON object per line so the radius job, the
notification dispatcher and the HTTP layer can be filtered by the ids they
attach. Everywhere else a short coloured line is printed, tagged with the
request, cycle or report it belongs to.

Modules log through the standard library and attach ids with `extra`:

    logger.info("Radius expanded", extra={"report_id": rid, "cycle_id": cid})

Only the keys in ALERT_FIELDS are lifted into the JSON entry.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

# Filled by RequestLoggingMiddleware for the lifetime of one request
_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

ALERT_FIELDS = (
    "report_id",
    "user_id",
    "notification_type",
    "channel",
    "cycle_id",
    "recipient_count",
    "duration_ms",
    "status_code",
    "endpoint",
)

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine")


def set_request_context(**kwargs: Any) -> None:
    """Replace the current request's context; call with no args to clear it."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def alert_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """The ALERT_FIELDS present on a record, in declaration order."""
    return {key: getattr(record, key) for key in ALERT_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        request = get_request_context()
        if request:
            entry["request"] = request
        entry.update(alert_fields(record))

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {
                "type": type(exc).__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Console output: time, level, owning request/cycle/report, message."""

    LEVEL_COLOURS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self._colour = colour

    @staticmethod
    def _tag(record: logging.LogRecord) -> str:
        request_id = get_request_context().get("request_id")
        if request_id:
            return f"req {request_id[:8]}"
        cycle_id = getattr(record, "cycle_id", None)
        if cycle_id:
            return f"cycle {cycle_id}"
        report_id = getattr(record, "report_id", None)
        if report_id:
            return f"report {report_id[:8]}"
        return ""

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8s}"
        if self._colour:
            level = f"{self.LEVEL_COLOURS.get(record.levelno, '')}{level}{self.RESET}"
        tag = self._tag(record)
        line = f"{self.formatTime(record, '%H:%M:%S')} {level}"
        if tag:
            line += f" [{tag}]"
        line += f" {record.name}: {record.getMessage()}"

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Install the stdout handler on the root logger, replacing any others.

    Defaults come from settings: LOG_LEVEL, and JSON output in production.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    if json_output is None:
        json_output = settings.is_production

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JSONFormatter() if json_output else PrettyFormatter(colour=sys.stdout.isatty())
    )
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
