"""Great-circle helpers shared by the ETA engine and the notification dispatcher."""

from __future__ import annotations

import math
from typing import Iterable, Optional, Tuple

R_EARTH_M = 6371000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return 2 * R_EARTH_M * math.asin(math.sqrt(a))


def is_within_radius(
    lat1: float, lon1: float, lat2: float, lon2: float, radius_m: float
) -> bool:
    return haversine_m(lat1, lon1, lat2, lon2) <= radius_m


def nearest_within(
    lat: float,
    lon: float,
    candidates: Iterable[Tuple[float, float]],
    radius_m: float,
) -> Optional[int]:
    """Index of the closest candidate no further than ``radius_m``, or None."""
    best_idx: Optional[int] = None
    best_dist = float("inf")
    for idx, (c_lat, c_lon) in enumerate(candidates):
        d = haversine_m(lat, lon, c_lat, c_lon)
        if d <= radius_m and d < best_dist:
            best_dist = d
            best_idx = idx
    return best_idx


__all__ = ["haversine_m", "is_within_radius", "nearest_within", "R_EARTH_M"]
