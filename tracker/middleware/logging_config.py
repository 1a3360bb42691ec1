"""
Logging setup for the variation engine.

Service modules log with ``extra={"variation_id": ..., "from_status": ...}``;
RequestContextFilter adds request_id and the caller's user_id from ``g``
when a record is emitted inside a request, so workflow and apply logs can be
joined to the HTTP line written by the timing middleware.

Output: JSON lines outside development/testing, a compact one-line format
otherwise.  LOG_LEVEL overrides the default level.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Request attributes, always emitted at the top level of a JSON line.
REQUEST_FIELDS = ("request_id", "user_id", "method", "path", "status", "duration_ms", "remote_addr")

# Variation engine attributes, grouped under "variation" in JSON lines.
VARIATION_FIELDS = (
    "project_id",
    "variation_id",
    "variation_ref",
    "milestone_id",
    "from_status",
    "to_status",
    "signer_role",
)


class RequestContextFilter(logging.Filter):
    """Stamp request_id / user_id from the current request onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "user_id", None) is None:
                record.user_id = getattr(g, "current_user_id", None)
        return True


def _collect(record: logging.LogRecord, fields) -> dict:
    values = {}
    for key in fields:
        val = getattr(record, key, None)
        if val is not None:
            values[key] = val
    return values


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_collect(record, REQUEST_FIELDS))
        variation = _collect(record, VARIATION_FIELDS)
        if variation:
            entry["variation"] = variation
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``12:00:01 INFO  tracker.services.apply_engine [VAR-004 approved→applied] msg``"""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = []
        ref = getattr(record, "variation_ref", None) or getattr(record, "variation_id", None)
        if ref is not None:
            tags.append(str(ref))
        old, new = getattr(record, "from_status", None), getattr(record, "to_status", None)
        if old and new:
            tags.append(f"{old}→{new}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            tags.append(f"{duration:.0f}ms")
        tag_str = f" [{' '.join(tags)}]" if tags else ""
        line = f"{ts} {record.levelname:<7} {record.name}{tag_str} {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    is_testing = app.config.get("TESTING", False)
    as_json = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if as_json else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if as_json else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    # re-created apps (tests) must not stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, "json" if as_json else "readable")
