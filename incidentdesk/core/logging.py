"""Logging setup with text and JSON renderers for structured ``extra`` fields."""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import UTC, datetime
from typing import Any

from incidentdesk.core.config import settings

_ROOT_LOGGER_NAME = "incidentdesk"
_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Attributes present on every LogRecord; anything else came from `extra=`.
_RESERVED_RECORD_ATTRS = frozenset(
    logging.LogRecord(
        name="",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg="",
        args=(),
        exc_info=None,
    ).__dict__.keys()
) | {"message", "asctime", "taskName"}


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_")
    }


class TextFormatter(logging.Formatter):
    """Plain formatter that appends `extra` fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _record_extras(record)
        if not extras:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return f"{base} {rendered}"


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(_record_extras(record))
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter() -> logging.Formatter:
    if settings.log_format.strip().lower() == "json":
        return JsonFormatter()
    formatter = TextFormatter(_TEXT_FORMAT)
    if settings.log_use_utc:
        formatter.converter = time.gmtime
    return formatter


def configure_logging() -> None:
    """Install a single stdout handler on the package logger."""
    level = logging.getLevelName(settings.log_level.strip().upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_build_formatter())

    root = logging.getLogger(_ROOT_LOGGER_NAME)
    root.handlers = [handler]
    root.setLevel(level)
    root.propagate = False

    # Uvicorn access logs share the same output stream/format.
    logging.getLogger("uvicorn.access").handlers = [handler]


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under the package root."""
    return logging.getLogger(name)
