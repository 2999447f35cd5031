from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Iterable, Mapping, Sequence

from settings import get_settings

_DEFAULT_EXTRA_KEYS = (
    "request_id",
    "endpoint",
    "attempt",
    "station_count",
    "feed_id",
    "token",
    "user_id",
    "amount",
    "payment_id",
    "booking_id",
    "station_id",
    "status",
    "reason",
)

# Chatty third-party loggers that would otherwise echo every upstream request.
_QUIET_LOGGERS = ("httpx", "httpcore")

_configured = False


def _render_value(value: Any) -> str:
    if isinstance(value, Mapping):
        return ",".join(f"{key}:{item}" for key, item in value.items()) or "-"
    return str(value)


class ContextualFormatter(logging.Formatter):
    """Append whitelisted ``extra`` attributes as ``key=value`` pairs.

    Mapping values such as per-source station counts are flattened to
    ``key:value`` lists so each log line stays on one line.
    """

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        extra_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._extra_keys: Sequence[str] = tuple(extra_keys or _DEFAULT_EXTRA_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context_parts = [
            f"{key}={_render_value(getattr(record, key))}"
            for key in self._extra_keys
            if getattr(record, key, None) is not None
        ]
        if context_parts:
            return f"{message} | {' '.join(context_parts)}"
        return message


def _logging_dict(log_level: str | int) -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "contextual": {
                "()": "logging_config.ContextualFormatter",
                "fmt": "%(asctime)sZ | %(levelname)s | %(name)s | %(threadName)s | %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
                "style": "%",
                "extra_keys": list(_DEFAULT_EXTRA_KEYS),
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "contextual",
            }
        },
        "loggers": {name: {"level": "WARNING", "propagate": True} for name in _QUIET_LOGGERS},
        "root": {"handlers": ["default"], "level": log_level},
    }


def configure_logging(level: str | int | None = None) -> None:
    """Configure service-wide logging once; an explicit ``level`` always reapplies it."""
    global _configured
    if _configured and level is None:
        return

    log_level = level if level is not None else get_settings().log_level
    dictConfig(_logging_dict(log_level))
    _configured = True
