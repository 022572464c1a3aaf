"""Great-circle distance, bearing and segment helpers on a spherical Earth.

All distances returned here are kilometers. Alarm thresholds elsewhere are
expressed in meters, so conversions go through ``km_to_m``/``m_to_km`` only.
"""
from __future__ import annotations

import math
from typing import Sequence, Tuple

EARTH_RADIUS_KM = 6371.0


def km_to_m(distance_km: float) -> float:
    return distance_km * 1000.0


def m_to_km(distance_m: float) -> float:
    return distance_m / 1000.0


def haversine_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    # Rounding can push ``a`` a hair outside [0, 1] for antipodal points.
    a = min(max(a, 0.0), 1.0) if not math.isnan(a) else a
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bearing_degrees(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial compass bearing from point 1 to point 2, in [0, 360)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlon = math.radians(lon2 - lon1)

    y = math.sin(dlon) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlon)
    bearing = (math.degrees(math.atan2(y, x)) + 360.0) % 360.0
    # (-tiny + 360) % 360 can round to exactly 360.0
    if bearing >= 360.0:
        bearing = 0.0
    return bearing


def project_onto_segment(
    lat: float,
    lon: float,
    start: Tuple[float, float],
    end: Tuple[float, float],
) -> float:
    """Fraction in [0, 1] of the point's projection along ``start -> end``.

    Uses a planar approximation in degrees, which is fine for the few hundred
    meters between consecutive stops. A zero-length segment projects to 0.
    """
    (lat1, lon1), (lat2, lon2) = start, end
    dx = lon2 - lon1
    dy = lat2 - lat1
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return 0.0
    t = ((lon - lon1) * dx + (lat - lat1) * dy) / length_sq
    if math.isnan(t):
        return t
    return max(0.0, min(1.0, t))


def distance_to_segment_km(
    lat: float,
    lon: float,
    start: Tuple[float, float],
    end: Tuple[float, float],
) -> float:
    """Distance in kilometers from a point to the closest point on a segment."""
    t = project_onto_segment(lat, lon, start, end)
    (lat1, lon1), (lat2, lon2) = start, end
    closest_lat = lat1 + t * (lat2 - lat1)
    closest_lon = lon1 + t * (lon2 - lon1)
    return haversine_distance_km(lat, lon, closest_lat, closest_lon)


def is_point_near_path(
    lat: float,
    lon: float,
    path: Sequence[Tuple[float, float]],
    max_distance_km: float,
) -> bool:
    """True when the point lies within ``max_distance_km`` of any path segment."""
    if len(path) == 1:
        return haversine_distance_km(lat, lon, path[0][0], path[0][1]) <= max_distance_km
    for start, end in zip(path[:-1], path[1:]):
        if distance_to_segment_km(lat, lon, start, end) <= max_distance_km:
            return True
    return False


__all__ = [
    "EARTH_RADIUS_KM",
    "bearing_degrees",
    "distance_to_segment_km",
    "haversine_distance_km",
    "is_point_near_path",
    "km_to_m",
    "m_to_km",
    "project_onto_segment",
]
