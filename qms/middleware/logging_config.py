"""
Structured logging configuration.

``LOG_FORMAT`` picks the formatter (``json`` or ``readable``; production
defaults to JSON) and ``LOG_LEVEL`` the level. Both come from the app
config, which reads them from the environment.

Services pass tenant and security context through ``extra=``. Inside a
request, ``TenantContextFilter`` fills ``tenant_id`` / ``user_id`` from
``flask.g`` for records that did not set them. JSON output carries the
context keys as top-level fields; the readable format appends them as a
``[k=v ...]`` suffix.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Keys callers may pass through ``extra=`` on a log call
CONTEXT_KEYS = (
    "tenant_id",
    "user_id",
    "entity_type",
    "entity_id",
    "event_type",
    "security_code",
    "permission",
    "violation_count",
)

_NOISY_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic")


def _context(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in CONTEXT_KEYS if getattr(record, key, None) is not None}


class TenantContextFilter(logging.Filter):
    """Default ``tenant_id`` / ``user_id`` to the identity of the current request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "tenant_id", None) is None:
                record.tenant_id = getattr(g, "current_tenant_id", None)
            if getattr(record, "user_id", None) is None:
                record.user_id = getattr(g, "current_user_id", None)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line format for development and tests."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        ctx = _context(record)
        if ctx:
            line += " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger according to the app config."""
    fmt = app.config.get("LOG_FORMAT") or ("readable" if app.debug or app.testing else "json")
    level_name = (app.config.get("LOG_LEVEL") or ("DEBUG" if app.debug else "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())
    handler.addFilter(TenantContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app may run more than once per process (tests)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
