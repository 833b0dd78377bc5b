"""Logging setup for the defense pipeline.

Everything goes through the standard library `logging` package, configured
once with `dictConfig`. Three output styles are available through the
LOG_FORMAT setting: plain text, text with request context appended, and one
JSON object per line for log shippers.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, List, Optional

from bulwark.app.core.config import Settings, settings as default_settings
from bulwark.app.core.context import get_current_request_id


# Request context carried on records through extra= or the ContextFilter
CONTEXT_FIELDS = (
    "request_id",
    "client_ip",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "reason_code",
)

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "timestamp", "logger", "level", "source", "taskName",
    )
)

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
CONTEXT_FORMAT = (
    TEXT_FORMAT
    + " | request_id=%(request_id)s client_ip=%(client_ip)s reason=%(reason_code)s"
)


class JSONFormatter(logging.Formatter):
    """Render each record as a single JSON object.

    Context fields are promoted to the top level; any other attribute passed
    through extra= is grouped under "extra".
    """

    CONTEXT_FIELDS = list(CONTEXT_FIELDS)

    def __init__(self, fields: Optional[List[str]] = None, datefmt: Optional[str] = None):
        super().__init__(datefmt=datefmt)
        self.fields = fields or list(self.CONTEXT_FIELDS)

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for name in self.fields:
            value = getattr(record, name, None)
            if value is not None and value != "-":
                entry[name] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in self.fields
        }
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info != (None, None, None):
            entry["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Make sure every record has the request context attributes.

    Missing fields default to None so text formats never fail on them, and
    request_id falls back to the id of the request being processed.
    """

    CONTEXT_DEFAULTS = dict.fromkeys(CONTEXT_FIELDS)

    def filter(self, record: logging.LogRecord) -> bool:
        for name, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, name):
                setattr(record, name, default)
        if record.request_id is None:
            record.request_id = get_current_request_id()
        return True


def _stream_handler(stream, level: str, formatter: str) -> Dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "stream": stream,
        "level": level,
        "formatter": formatter,
        "filters": ["request_context"],
    }


def get_logging_config(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Build the dictConfig mapping, from the environment settings by default."""
    settings = settings or default_settings
    log_format = settings.log_format.lower()
    log_level = settings.log_level.upper()

    formatters: Dict[str, Any] = {
        "text": {"format": TEXT_FORMAT},
        "structured": {"format": CONTEXT_FORMAT},
        "json": {"()": "bulwark.app.core.logging.JSONFormatter"},
    }
    formatter = log_format if log_format in formatters else "text"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "request_context": {"()": "bulwark.app.core.logging.ContextFilter"},
        },
        "formatters": formatters,
        "handlers": {
            "console": _stream_handler(sys.stdout, log_level, formatter),
            "error_console": _stream_handler(sys.stderr, "ERROR", formatter),
        },
        "loggers": {
            "bulwark": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {"level": log_level, "handlers": ["console"], "propagate": False},
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Apply the logging configuration."""
    logging.config.dictConfig(get_logging_config(settings))
    # Every request already produces an audit record
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "bulwark") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    reason_code: Optional[str] = None,
    **fields,
) -> Dict[str, Any]:
    """Build an extra= mapping, leaving out fields that are None.

    Example:
        >>> logger.warning(
        ...     "Request rejected",
        ...     extra=get_log_context(client_ip="10.0.0.1", reason_code="null_byte"),
        ... )
    """
    context: Dict[str, Any] = {
        "request_id": request_id,
        "client_ip": client_ip,
        "reason_code": reason_code,
        **fields,
    }
    return {key: value for key, value in context.items() if value is not None}
