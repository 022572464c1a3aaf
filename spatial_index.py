"""Lat/lon grid index for approximate-radius stop queries.

Each entity is bucketed into the cell ``(floor(lon / cell), floor(lat / cell))``.
Queries scan a square block of cells around the query point and then compute
exact haversine distances for every candidate.

The cell search radius uses ``cell_size_deg * 111`` km per cell, which is the
equatorial width. Longitude cells shrink toward the poles so at high latitudes
the scan can miss entities near the edge of the radius; this is not corrected.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Tuple

from geo import haversine_distance_km, m_to_km
from stops import Coordinate, LocatedEntity, RankedMatch

DEFAULT_CELL_SIZE_DEG = 0.01
KM_PER_DEGREE = 111.0

CellKey = Tuple[int, int]


def cell_of(lat: float, lon: float, cell_size_deg: float = DEFAULT_CELL_SIZE_DEG) -> CellKey:
    return (math.floor(lon / cell_size_deg), math.floor(lat / cell_size_deg))


@dataclass(frozen=True)
class SpatialGridIndex:
    """Immutable grid index. Rebuild it when the entity set changes."""
    cell_size_deg: float
    _cells: Mapping[CellKey, Tuple[LocatedEntity, ...]] = field(repr=False)
    size: int = 0
    skipped_count: int = 0

    @classmethod
    def build(
        cls,
        entities: Iterable[LocatedEntity],
        cell_size_deg: float = DEFAULT_CELL_SIZE_DEG,
    ) -> "SpatialGridIndex":
        if not (cell_size_deg > 0 and math.isfinite(cell_size_deg)):
            raise ValueError(f"cell size must be a positive number of degrees, got {cell_size_deg!r}")

        buckets: Dict[CellKey, List[LocatedEntity]] = {}
        size = 0
        skipped = 0
        for entity in entities:
            if not entity.coordinates.is_finite():
                skipped += 1
                continue
            key = cell_of(entity.latitude, entity.longitude, cell_size_deg)
            buckets.setdefault(key, []).append(entity)
            size += 1

        if skipped:
            print(f"[index] skipped {skipped} entities with non-finite coordinates")

        frozen_cells = MappingProxyType({key: tuple(items) for key, items in buckets.items()})
        return cls(cell_size_deg=cell_size_deg, _cells=frozen_cells, size=size, skipped_count=skipped)

    def __len__(self) -> int:
        return self.size

    @property
    def cells(self) -> Mapping[CellKey, Tuple[LocatedEntity, ...]]:
        return self._cells

    def cell_radius(self, radius_km: float) -> int:
        return math.ceil(radius_km / (self.cell_size_deg * KM_PER_DEGREE))

    def find_nearby(self, lat: float, lon: float, radius_km: float) -> List[RankedMatch]:
        """All entities within ``radius_km`` of the point, closest first."""
        if not (math.isfinite(lat) and math.isfinite(lon) and math.isfinite(radius_km)):
            return []
        if radius_km < 0 or not self._cells:
            return []

        grid_radius = self.cell_radius(radius_km)
        center_x, center_y = cell_of(lat, lon, self.cell_size_deg)

        matches: List[RankedMatch] = []
        for x in range(center_x - grid_radius, center_x + grid_radius + 1):
            for y in range(center_y - grid_radius, center_y + grid_radius + 1):
                for entity in self._cells.get((x, y), ()):
                    distance = haversine_distance_km(lat, lon, entity.latitude, entity.longitude)
                    if distance <= radius_km:
                        matches.append(RankedMatch(entity=entity, distance_km=distance))

        matches.sort(key=lambda m: m.distance_km)
        return matches

    def nearest(
        self,
        point: Coordinate,
        k: int = 10,
        max_distance_meters: float = 1000.0,
    ) -> List[LocatedEntity]:
        """Up to ``k`` closest entities within ``max_distance_meters``."""
        if k <= 0:
            return []
        nearby = self.find_nearby(point.latitude, point.longitude, m_to_km(max_distance_meters))
        return [match.entity for match in nearby[:k]]

    def nearest_ranked(
        self,
        point: Coordinate,
        k: int = 10,
        max_distance_meters: float = 1000.0,
    ) -> List[RankedMatch]:
        if k <= 0:
            return []
        return self.find_nearby(point.latitude, point.longitude, m_to_km(max_distance_meters))[:k]


__all__ = ["DEFAULT_CELL_SIZE_DEG", "SpatialGridIndex", "cell_of"]
