from __future__ import annotations

from math import atan2, cos, radians, sin, sqrt
from typing import Any, Dict, Optional

from .constants import (
    DEFAULT_AVERAGE_SPEED_KMH,
    SENSITIVE_KEYS,
    VEHICLE_AVERAGE_SPEEDS_KMH,
)

_EARTH_RADIUS_KM = 6371.0


def scrub_sensitive(value: Any) -> Any:
    if isinstance(value, dict):
        sanitized: Dict[str, Any] = {}
        for key, val in value.items():
            if isinstance(key, str) and key.lower() in SENSITIVE_KEYS:
                sanitized[key] = "***"
            else:
                sanitized[key] = scrub_sensitive(val)
        return sanitized
    if isinstance(value, list):
        return [scrub_sensitive(item) for item in value]
    return value


def haversine_km(lat1: Any, lon1: Any, lat2: Any, lon2: Any) -> Optional[float]:
    """
    Great-circle distance between two points in kilometres.

    Returns ``None`` when any coordinate is missing or not numeric instead of
    inventing a zero distance.
    """
    try:
        p1, l1, p2, l2 = (float(v) for v in (lat1, lon1, lat2, lon2))
    except (TypeError, ValueError):
        return None
    d_lat = radians(p2 - p1)
    d_lon = radians(l2 - l1)
    a = sin(d_lat / 2) ** 2 + cos(radians(p1)) * cos(radians(p2)) * sin(d_lon / 2) ** 2
    return _EARTH_RADIUS_KM * 2 * atan2(sqrt(a), sqrt(1 - a))


def estimate_eta_minutes(distance_km: Optional[float], vehicle: Optional[str]) -> Optional[float]:
    if distance_km is None:
        return None
    speed = VEHICLE_AVERAGE_SPEEDS_KMH.get(vehicle or "", DEFAULT_AVERAGE_SPEED_KMH)
    return distance_km / speed * 60.0


def coerce_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def coerce_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
