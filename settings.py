from __future__ import annotations

import math
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple


DEFAULT_OVERPASS_ENDPOINTS = (
    "https://overpass-api.de/api/interpreter",
    "https://maps.mail.ru/osm/tools/overpass/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
)
DEFAULT_OPEN_CHARGE_MAP_URL = "https://api.openchargemap.io/v3"

_OVERPASS_ENDPOINTS_ENV = "OVERPASS_ENDPOINTS"
_OVERPASS_TIMEOUT_ENV = "OVERPASS_TIMEOUT_SECONDS"
_OCM_API_KEY_ENV = "OPEN_CHARGE_MAP_API_KEY"
_OCM_BASE_URL_ENV = "OPEN_CHARGE_MAP_BASE_URL"
_OCM_COUNTRY_ENV = "OPEN_CHARGE_MAP_COUNTRY"
_SEARCH_RADIUS_ENV = "DEFAULT_SEARCH_RADIUS_KM"
_STATION_TABLE_PATH_ENV = "STATION_TABLE_PATH"
_PAYMENT_TABLE_PATH_ENV = "PAYMENT_TABLE_PATH"
_BOOKING_TABLE_PATH_ENV = "BOOKING_TABLE_PATH"
_LEDGER_ROOT_ENV = "LEDGER_ROOT_PATH"
_STARTING_BALANCE_ENV = "STARTING_COIN_BALANCE"
_SESSION_SECONDS_ENV = "PAYMENT_SESSION_SECONDS"
_VERIFICATION_DELAY_ENV = "PAYMENT_VERIFICATION_DELAY_SECONDS"
_WORKER_COUNT_ENV = "SEARCH_WORKER_COUNT"
_MAX_FEEDS_ENV = "STATION_FEED_LIMIT"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    overpass_endpoints: Tuple[str, ...]
    overpass_timeout: float
    open_charge_map_api_key: Optional[str]
    open_charge_map_base_url: str
    open_charge_map_country: Optional[str]
    default_radius_km: float
    station_table_path: Optional[str]
    payment_table_path: Optional[str]
    booking_table_path: Optional[str]
    ledger_root_path: Optional[str]
    starting_balance: int
    payment_session_seconds: float
    payment_verification_delay: float
    search_workers: int
    max_feeds: int
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_list_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    items = tuple(part.strip() for part in value.split(",") if part.strip())
    return items or default


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_non_negative_float(name: str, default: float, allow_zero: bool = False) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    if not math.isfinite(parsed):
        return default
    if parsed > 0 or (allow_zero and parsed == 0):
        return parsed
    return default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        overpass_endpoints=_read_list_env(_OVERPASS_ENDPOINTS_ENV, DEFAULT_OVERPASS_ENDPOINTS),
        overpass_timeout=_read_non_negative_float(_OVERPASS_TIMEOUT_ENV, 20.0),
        open_charge_map_api_key=_read_optional_env(_OCM_API_KEY_ENV, None),
        open_charge_map_base_url=_read_str_env(_OCM_BASE_URL_ENV, DEFAULT_OPEN_CHARGE_MAP_URL),
        open_charge_map_country=_read_optional_env(_OCM_COUNTRY_ENV, None),
        default_radius_km=_read_non_negative_float(_SEARCH_RADIUS_ENV, 5.0),
        station_table_path=_read_optional_env(_STATION_TABLE_PATH_ENV, "./tmp/stations.json"),
        payment_table_path=_read_optional_env(_PAYMENT_TABLE_PATH_ENV, "./tmp/payments.json"),
        booking_table_path=_read_optional_env(_BOOKING_TABLE_PATH_ENV, "./tmp/bookings.json"),
        ledger_root_path=_read_optional_env(_LEDGER_ROOT_ENV, "./tmp/ledger"),
        starting_balance=_read_positive_int(_STARTING_BALANCE_ENV, 100),
        payment_session_seconds=_read_non_negative_float(_SESSION_SECONDS_ENV, 120.0),
        payment_verification_delay=_read_non_negative_float(
            _VERIFICATION_DELAY_ENV, 2.0, allow_zero=True
        ),
        search_workers=_read_positive_int(_WORKER_COUNT_ENV, 4),
        max_feeds=_read_positive_int(_MAX_FEEDS_ENV, 256),
        log_level=_read_log_level("INFO"),
    )
