from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import math

from geo import haversine_distance_km, km_to_m, m_to_km
from spatial_index import SpatialGridIndex
from stops import Coordinate, LocatedEntity, RankedMatch


# Below this many stops a linear scan beats building an index.
INDEX_THRESHOLD = 20

# How many index candidates to pull before picking the closest.
INDEX_CANDIDATES = 10

DEFAULT_MAX_DISTANCE_KM = 1.0


@dataclass
class ClosestStop:
    """Result of a closest-stop lookup.

    ``match`` is None and ``index_in_stops`` is -1 when nothing is within the
    threshold. ``index_in_stops`` refers to the caller's original ordering.
    """
    match: Optional[RankedMatch]
    index_in_stops: int
    candidates: List[RankedMatch] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.match is not None


def _ranked_linear(user_lat: float, user_lon: float, stops: Sequence[LocatedEntity]) -> List[RankedMatch]:
    ranked = [
        RankedMatch(
            entity=stop,
            distance_km=haversine_distance_km(user_lat, user_lon, stop.latitude, stop.longitude),
        )
        for stop in stops
    ]
    # NaN distances sort last instead of poisoning the ordering.
    ranked.sort(key=lambda m: (math.isnan(m.distance_km), m.distance_km))
    return ranked


def find_closest_stop(
    user_lat: float,
    user_lon: float,
    stops: Sequence[LocatedEntity],
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
    *,
    index: Optional[SpatialGridIndex] = None,
) -> ClosestStop:
    """Closest stop within ``max_distance_km``, never force-matching a far one.

    Collections larger than ``INDEX_THRESHOLD`` go through a spatial index
    (``index`` when the caller already owns one for exactly these stops,
    otherwise a temporary one).
    """
    if not stops:
        return ClosestStop(match=None, index_in_stops=-1)

    if len(stops) > INDEX_THRESHOLD:
        grid = index if index is not None else SpatialGridIndex.build(stops)
        candidates = grid.nearest_ranked(
            Coordinate(user_lat, user_lon),
            INDEX_CANDIDATES,
            km_to_m(max_distance_km),
        )
    else:
        candidates = _ranked_linear(user_lat, user_lon, stops)

    closest = candidates[0] if candidates else None
    if closest is None or not closest.distance_km <= max_distance_km:
        return ClosestStop(match=None, index_in_stops=-1, candidates=candidates)

    index_in_stops = next(
        (i for i, stop in enumerate(stops) if stop.id == closest.entity.id),
        -1,
    )
    return ClosestStop(match=closest, index_in_stops=index_in_stops, candidates=candidates)


def find_k_nearest(
    user_lat: float,
    user_lon: float,
    entities: Sequence[LocatedEntity],
    k: int,
    max_distance_meters: Optional[float] = None,
) -> List[RankedMatch]:
    """The ``k`` closest entities, optionally limited to ``max_distance_meters``."""
    if k <= 0:
        return []
    ranked = _ranked_linear(user_lat, user_lon, entities)
    if max_distance_meters is not None:
        limit_km = m_to_km(max_distance_meters)
        ranked = [m for m in ranked if m.distance_km <= limit_km]
    return ranked[:k]


__all__ = [
    "ClosestStop",
    "DEFAULT_MAX_DISTANCE_KM",
    "INDEX_THRESHOLD",
    "find_closest_stop",
    "find_k_nearest",
]
