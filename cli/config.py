from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_POLL_INTERVAL = 0.5
# Long enough to outlast a full payment session countdown.
DEFAULT_POLL_TIMEOUT = 130.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_USER = "guest"

_BASE_URL_ENV = "API_BASE_URL"
_POLL_INTERVAL_ENV = "CLI_POLL_INTERVAL"
_POLL_TIMEOUT_ENV = "CLI_POLL_TIMEOUT"
_REQUEST_TIMEOUT_ENV = "CLI_REQUEST_TIMEOUT"
_USER_ENV = "SPARK_USER_ID"


@dataclass(frozen=True)
class CLIConfig:
    base_url: str = DEFAULT_BASE_URL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_timeout: float = DEFAULT_POLL_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    user_id: str = DEFAULT_USER


def _positive_float(value: Optional[str], default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _normalize_base_url(value: str) -> str:
    """Strip trailing slashes; anything that is not an http(s) URL falls back to the default."""
    candidate = value.strip().rstrip("/")
    parts = urlsplit(candidate)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return DEFAULT_BASE_URL
    return candidate


def load_config(
    base_url: Optional[str] = None,
    poll_interval: Optional[float] = None,
    poll_timeout: Optional[float] = None,
    user_id: Optional[str] = None,
) -> CLIConfig:
    user = (user_id or os.getenv(_USER_ENV) or "").strip()
    return CLIConfig(
        base_url=_normalize_base_url(base_url or os.getenv(_BASE_URL_ENV) or DEFAULT_BASE_URL),
        poll_interval=poll_interval
        if poll_interval is not None
        else _positive_float(os.getenv(_POLL_INTERVAL_ENV), DEFAULT_POLL_INTERVAL),
        poll_timeout=poll_timeout
        if poll_timeout is not None
        else _positive_float(os.getenv(_POLL_TIMEOUT_ENV), DEFAULT_POLL_TIMEOUT),
        request_timeout=_positive_float(os.getenv(_REQUEST_TIMEOUT_ENV), DEFAULT_REQUEST_TIMEOUT),
        user_id=user or DEFAULT_USER,
    )
