"""Coordinate validation and great-circle distance helpers."""

from __future__ import annotations

import math
from typing import Any

EARTH_RADIUS_KM = 6371.0


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def is_valid_coordinate(latitude: Any, longitude: Any) -> bool:
    lat = _as_float(latitude)
    lng = _as_float(longitude)
    if lat is None or lng is None:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def normalize_radius(radius_km: Any, default: float = 5.0) -> float:
    """Return ``radius_km`` as a positive float, or ``default`` when unusable."""
    parsed = _as_float(radius_km)
    if parsed is None or parsed <= 0:
        return default
    return parsed


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres, rounded to one decimal place."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_KM * c, 1)
