"""Logging setup for the governor.

Standard library logging configured with ``dictConfig``. Limiter decisions
and retries attach their context (endpoint key, denial reason, advisory
delay, ...) through ``extra=get_log_context(...)``; the JSON formatter
lifts those fields to the top level of each record.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from governor.app.core.config import settings

# Context attached to governor log records
CONTEXT_FIELDS = (
    "endpoint_key",  # AUTH_LOGIN, QUERY, ...
    "storage_key",
    "reason",        # window | tokens | spacing | server
    "retry_after",   # ms
    "attempt",
    "method",
    "url",
    "status_code",
)

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Render each record as one JSON object per line.

    Context fields that are set (not None) appear at the top level; any
    other ``extra=`` attribute is nested under ``"extra"``.
    """

    CONTEXT_FIELDS = CONTEXT_FIELDS

    def __init__(
        self,
        context_fields: Optional[Iterable[str]] = None,
        datefmt: Optional[str] = None,
    ):
        super().__init__(datefmt=datefmt)
        self.context_fields = tuple(context_fields or self.CONTEXT_FIELDS)

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        payload: Dict[str, Any] = {
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
        payload.update(self._context(record))

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and key not in self.context_fields
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)

    def _context(self, record: logging.LogRecord) -> Dict[str, Any]:
        context = {}
        for name in self.context_fields:
            value = getattr(record, name, None)
            if value is not None:
                context[name] = value
        return context


class ContextFilter(logging.Filter):
    """Give every record all context attributes, defaulting to None.

    Keeps %-style format strings such as ``%(endpoint_key)s`` from failing
    on records logged without context.
    """

    CONTEXT_DEFAULTS = dict.fromkeys(CONTEXT_FIELDS)

    def filter(self, record: logging.LogRecord) -> bool:
        for name, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, name):
                setattr(record, name, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Build the ``dictConfig`` for the configured level and format.

    ``log_format`` selects the console formatter: ``text`` (default),
    ``structured`` (text plus limiter context) or ``json``.
    """
    log_format = str(settings.log_format).lower()
    log_level = str(settings.log_level).upper()

    text = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatters: Dict[str, Dict[str, Any]] = {
        "standard": {"format": text},
        "structured": {
            "format": text + " - endpoint_key=%(endpoint_key)s"
            " - reason=%(reason)s - retry_after=%(retry_after)s",
        },
    }
    if log_format == "json":
        formatters["json"] = {"()": "governor.app.core.logging.JSONFormatter"}
        formatter = "json"
    elif log_format == "structured":
        formatter = "structured"
    else:
        formatter = "standard"

    def stream_handler(level: str, stream: Any) -> Dict[str, Any]:
        return {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": formatter,
            "stream": stream,
            "filters": ["context"],
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {"context": {"()": "governor.app.core.logging.ContextFilter"}},
        "handlers": {
            "console": stream_handler(log_level, sys.stdout),
            "error_console": stream_handler("ERROR", sys.stderr),
        },
        "loggers": {
            "governor": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            # request lines from httpx are noise next to limiter decisions
            "httpx": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    """Apply :func:`get_logging_config`. Call once at application start."""
    logging.config.dictConfig(get_logging_config())


def get_logger(name: str = "governor") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    endpoint_key: Optional[str] = None,
    storage_key: Optional[str] = None,
    reason: Optional[str] = None,
    retry_after: Optional[int] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Build the ``extra=`` mapping for a log call, dropping None values.

    Example:
        >>> logger.debug(
        ...     "Rate limit denied",
        ...     extra=get_log_context(endpoint_key="AUTH_LOGIN", retry_after=1500),
        ... )
    """
    context = {
        "endpoint_key": endpoint_key,
        "storage_key": storage_key,
        "reason": reason,
        "retry_after": retry_after,
        **extra,
    }
    return {key: value for key, value in context.items() if value is not None}
