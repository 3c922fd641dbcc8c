"""
Structured logging configuration.

Format by environment:
    production           one JSON object per line (log aggregators)
    development/testing  coloured single line, context appended as key=value

LOG_LEVEL overrides the level (default DEBUG outside production, INFO in it).

Services pass structured context through ``extra={...}``.  Only keys listed
in CONTEXT_FIELDS are emitted; every record logged inside a request also
carries the request id set by the timing middleware.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

CONTEXT_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "root_id",
    "root_version",
    "derived_document_id",
    "change_id",
    "change_count",
    "batch_id",
    "outcome",
    "field_path",
)

_NOISY_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine")


class RequestIdFilter(logging.Filter):
    """Stamp ``record.request_id`` from flask.g when a request is active.

    Cascade worker threads run outside the request context and keep
    whatever request_id the caller passed explicitly, if any.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


def record_context(record: logging.LogRecord) -> dict:
    """Return the CONTEXT_FIELDS present on ``record``, in declaration order."""
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            **record_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    _LEVEL_COLOURS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    _RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        ctx = record_context(record)
        duration = ctx.pop("duration_ms", None)

        parts = [
            datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
            f"{self._LEVEL_COLOURS.get(record.levelno, '')}{record.levelname:<8}{self._RESET}",
            f"{record.name}: {record.getMessage()}",
        ]
        parts.extend(f"{k}={v}" for k, v in ctx.items())
        if duration is not None:
            parts.append(f"[{duration:.0f}ms]")

        line = " ".join(parts)
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for ``app``."""
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.addFilter(RequestIdFilter())
    handler.setLevel(level)

    # Replaced, not appended: create_app runs more than once under pytest
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info(
            "Logging configured level=%s format=%s",
            level_name, "json" if production else "readable",
        )
