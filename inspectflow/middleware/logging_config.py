"""
Logging setup for InspectFlow.

Two output shapes share one root handler:
  JSONFormatter      production; one object per line for the log aggregator
  ReadableFormatter  development and tests; coloured, with the event tag

Engine code passes workflow context through ``extra=`` (``inspection_id``,
``from_state``, ``to_state``, ``event_type``). ``ActorContextFilter`` adds the
caller's ``user_id`` / ``shop_id`` and the request id from ``flask.g`` when a
record is emitted inside a request, so service modules never have to.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Record attributes promoted to top-level JSON keys when present
EXTRA_KEYS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "shop_id",
    "user_id",
    "inspection_id",
    "from_state",
    "to_state",
    "event_type",
)


class ActorContextFilter(logging.Filter):
    """Stamp request id and actor identity onto records emitted during a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_request_context():
            return True
        if getattr(record, "request_id", None) is None:
            record.request_id = g.get("request_id")
        actor = g.get("actor")
        if actor is not None:
            if getattr(record, "user_id", None) is None:
                record.user_id = actor.user_id
            if getattr(record, "shop_id", None) is None:
                record.shop_id = actor.shop_id
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({k: getattr(record, k) for k in EXTRA_KEYS if getattr(record, k, None) is not None})
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line output: time, level, logger, <event>, message."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        parts = [
            datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
            f"{color}{record.levelname:<8}{self.RESET}",
            f"{record.name}:",
        ]
        event = getattr(record, "event_type", None)
        if event:
            parts.append(f"<{event}>")
        inspection_id = getattr(record, "inspection_id", None)
        if inspection_id is not None:
            parts.append(f"[inspection {inspection_id}]")
        parts.append(record.getMessage())
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f"({duration:.0f}ms)")
        line = " ".join(parts)
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install the root handler for ``app``.

    Level comes from ``LOG_LEVEL`` (config, then environment); the default is
    INFO in production and DEBUG otherwise. Production logs JSON.
    """
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG")
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.addFilter(ActorContextFilter())
    handler.setLevel(level)

    # create_app() may run more than once per process (tests, CLI)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("werkzeug", "sqlalchemy.engine", "alembic", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging ready (level=%s, json=%s)", level_name.upper(), production)
