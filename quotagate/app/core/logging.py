"""Logging configuration for quotagate.

Admission events (degraded store, denials, data-integrity problems,
dropped background work) are logged with their context attached as
record attributes. ``log_format=json`` emits one JSON object per line for
log aggregators; ``structured`` appends the main context fields to the
text format.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from quotagate.app.core.config import settings

# LogRecord attributes that never end up under "extra"
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """Format records as single-line JSON.

    Context fields are promoted to the top level when set; any other
    attribute passed through ``extra`` is nested under ``"extra"``.
    """

    CONTEXT_FIELDS = (
        "identifier",   # API key id, user id or group id
        "scope",        # apikey | group | user | global
        "metric",       # tokens | cost | requests
        "period",       # daily | monthly
        "reason",       # denial reason
        "event",        # observer event name
        "error_type",   # store failure class
    )

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        extra: Dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in self.CONTEXT_FIELDS:
                if value is not None:
                    entry[key] = value
            elif key not in _RECORD_ATTRS:
                extra[key] = value
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Give every record the context fields so text formats can reference them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in JSONFormatter.CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, None)
        return True


def _stream_handler(level: str, stream, formatter: str) -> Dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "level": level,
        "formatter": formatter,
        "stream": stream,
        "filters": ["context"],
    }


def get_logging_config() -> Dict[str, Any]:
    """Build the ``logging.config.dictConfig`` dictionary from settings."""
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters: Dict[str, Any] = {
        "standard": {"format": _TEXT_FORMAT},
        "structured": {
            "format": _TEXT_FORMAT
            + " - event=%(event)s - identifier=%(identifier)s - scope=%(scope)s"
        },
        "json": {"()": "quotagate.app.core.logging.JSONFormatter"},
    }
    formatter = {"json": "json", "structured": "structured"}.get(log_format, "standard")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {"context": {"()": "quotagate.app.core.logging.ContextFilter"}},
        "handlers": {
            "console": _stream_handler(log_level, sys.stdout, formatter),
            "error_console": _stream_handler("ERROR", sys.stderr, formatter),
        },
        "loggers": {
            "quotagate": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str = "quotagate") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    identifier: Optional[str] = None,
    scope: Optional[str] = None,
    metric: Optional[str] = None,
    period: Optional[str] = None,
    event: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Build the ``extra`` mapping for a log call, dropping unset fields.

    Example:
        >>> logger.warning(
        ...     "Store degraded",
        ...     extra=get_log_context(identifier="key-1", event="store_degraded")
        ... )
    """
    context = dict(
        identifier=identifier, scope=scope, metric=metric, period=period, event=event
    )
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
