"""Logging for the security gate.

Rejections, blocks and degraded identifications are logged with the
caller's identifier and the policy involved, so a single line says who was
stopped and by what. ``log_format=json`` emits one object per line for log
shippers; ``text`` appends the same fields as ``key=value`` pairs.
"""

import json
import logging
import logging.config
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from actiongate.app.core.config import settings

# Fields the gate attaches to its records, in output order
GATE_FIELDS = (
    "request_id",
    "client_id",
    "identifier_tier",
    "policy",
    "csrf_reason",
    "path",
    "method",
)

# Request ID of the request currently being handled (set by RequestIdMiddleware)
_current_request_id: ContextVar[Optional[str]] = ContextVar(
    "current_request_id", default=None
)


def set_current_request_id(request_id: Optional[str]) -> None:
    """Bind a request ID to the current execution context."""
    _current_request_id.set(request_id)


def get_current_request_id() -> Optional[str]:
    """Return the request ID bound to the current execution context."""
    return _current_request_id.get()


def gate_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """The gate fields set on ``record``, skipping unset ones."""
    fields = {}
    for name in GATE_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            fields[name] = value
    return fields


class ContextFilter(logging.Filter):
    """Stamps the current request ID on records that don't carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_current_request_id()
        return True


class TextFormatter(logging.Formatter):
    """``<time> <level> <logger> <message> client_id=... policy=...``"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = gate_fields(record)
        if not fields:
            return line
        pairs = " ".join(f"{name}={value}" for name, value in fields.items())
        # Keep the fields on the first line when a traceback follows
        head, sep, tail = line.partition("\n")
        return f"{head} {pairs}{sep}{tail}"


class JSONFormatter(logging.Formatter):
    """One JSON object per record with the gate fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(gate_fields(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


def get_logging_config() -> Dict[str, Any]:
    """Build the ``dictConfig`` for the configured format and level."""
    formatter = "json" if settings.log_format == "json" else "text"
    level = settings.log_level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "text": {"()": TextFormatter},
            "json": {"()": JSONFormatter},
        },
        "filters": {
            "context": {"()": ContextFilter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
                "formatter": formatter,
                "filters": ["context"],
            },
        },
        "loggers": {
            "actiongate": {
                "level": level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    logging.config.dictConfig(get_logging_config())


def get_logger(name: str = "actiongate") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping from gate fields, dropping ``None`` values.

    Example:
        >>> logger.warning(
        ...     "Client blocked",
        ...     extra=get_log_context(client_id="ip:203.0.113.7", policy="public")
        ... )
    """
    unknown = set(fields) - set(GATE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log fields: {sorted(unknown)}")
    return {name: value for name, value in fields.items() if value is not None}
