"""
Structured logging for the engine.

Every record can carry engine context: the request id (injected from
``flask.g`` by RequestContextFilter) and the ``feature_id`` /
``learning_id`` / ``event_type`` extras that services pass via ``extra=``.

- LOG_FORMAT=json    one JSON object per line (default outside development)
- LOG_FORMAT=text    compact coloured lines (default in development/testing)
- LOG_LEVEL          overrides the level (DEBUG in development, INFO otherwise)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Record attributes copied into JSON output when present
_CONTEXT_KEYS = (
    "request_id",
    "feature_id",
    "learning_id",
    "event_type",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

# Third-party loggers that drown out engine events at DEBUG
_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic.runtime.migration", "flask_limiter")


class RequestContextFilter(logging.Filter):
    """Attach the current request id to records emitted inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """``12:04:55 WARNING  sdd_engine.services.eval_service [auth-flow alert.raise] msg``"""

    _LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    _RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self._LEVEL_COLORS.get(record.levelname, '')}{level}{self._RESET}"

        tags = [
            str(v) for v in (
                getattr(record, "feature_id", None) or getattr(record, "learning_id", None),
                getattr(record, "event_type", None),
            ) if v
        ]
        context = f" [{' '.join(tags)}]" if tags else ""
        line = f"{ts} {level} {record.name}{context} {record.getMessage()}"

        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for ``app``.

    Re-running (one app per test session, several in a shell) replaces the
    handler instead of stacking a second one.
    """
    development = app.config.get("DEBUG", False) or app.config.get("TESTING", False)

    level_name = (os.getenv("LOG_LEVEL") or ("DEBUG" if development else "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = (os.getenv("LOG_FORMAT") or ("text" if development else "json")).lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter(color=sys.stderr.isatty()))
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.config.get("TESTING", False):
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
