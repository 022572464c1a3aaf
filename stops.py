from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import math


class StopKind(str, Enum):
    BUS = "bus"
    TRAIN = "train"


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def is_finite(self) -> bool:
        return math.isfinite(self.latitude) and math.isfinite(self.longitude)


@dataclass(frozen=True)
class RouteMeta:
    """Position of a stop along one direction of a route."""
    sequence: int
    direction: int


@dataclass(frozen=True)
class LocatedEntity:
    """A stop or station with a position. Identity is ``id``."""
    id: str
    name: str
    coordinates: Coordinate
    kind: StopKind = StopKind.BUS
    route_meta: Optional[RouteMeta] = None

    @property
    def latitude(self) -> float:
        return self.coordinates.latitude

    @property
    def longitude(self) -> float:
        return self.coordinates.longitude

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }
        if self.route_meta is not None:
            data["sequence"] = self.route_meta.sequence
            data["direction"] = self.route_meta.direction
        return data


@dataclass(frozen=True)
class BusStop(LocatedEntity):
    road_name: Optional[str] = None


@dataclass(frozen=True)
class TrainStation(LocatedEntity):
    kind: StopKind = StopKind.TRAIN
    line_code: Optional[str] = None


@dataclass(frozen=True)
class RankedMatch:
    entity: LocatedEntity
    distance_km: float

    def to_dict(self) -> Dict[str, Any]:
        data = self.entity.to_dict()
        data["distance_km"] = self.distance_km
        return data


@dataclass(frozen=True)
class LocationSample:
    """A single position fix pushed by the platform location service."""
    latitude: float
    longitude: float
    timestamp_ms: int
    is_fallback: bool = False

    @property
    def coordinates(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


def _parse_float(value: Optional[object]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_int(value: Optional[object]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _normalize_id(value: Optional[object]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_stop(raw: Dict[str, Any], kind: Optional[StopKind] = None) -> Optional[LocatedEntity]:
    """Build a stop from an upstream/bundled record, or None when unusable.

    Accepts the generic shape (``id``/``name``/``latitude``/``longitude`` or a
    nested ``coordinates`` object) as well as the LTA style keys
    (``BusStopCode``/``Description``/``RoadName`` for buses and
    ``StationCode``/``StationName`` for trains). Non-finite coordinates are
    kept here; the spatial index is where they get rejected.
    """
    if not isinstance(raw, dict):
        return None

    if kind is None:
        raw_kind = str(raw.get("kind") or raw.get("type") or "").strip().lower()
        if raw_kind == StopKind.TRAIN.value or "StationCode" in raw:
            kind = StopKind.TRAIN
        else:
            kind = StopKind.BUS

    stop_id = _normalize_id(
        raw.get("id") or raw.get("BusStopCode") or raw.get("StationCode") or raw.get("StopID")
    )
    if stop_id is None:
        return None

    coords = raw.get("coordinates") if isinstance(raw.get("coordinates"), dict) else raw
    lat = _parse_float(coords.get("latitude", coords.get("Latitude")))
    lon = _parse_float(coords.get("longitude", coords.get("Longitude")))
    if lat is None or lon is None:
        return None

    name = raw.get("name") or raw.get("Description") or raw.get("StationName") or stop_id
    name = str(name).strip()

    route_meta = None
    sequence = _parse_int(raw.get("sequence", raw.get("StopSequence")))
    direction = _parse_int(raw.get("direction", raw.get("Direction")))
    if sequence is not None:
        route_meta = RouteMeta(sequence=sequence, direction=direction if direction is not None else 1)

    coordinate = Coordinate(lat, lon)
    if kind is StopKind.TRAIN:
        line_code = raw.get("line_code") or raw.get("LineCode")
        return TrainStation(
            id=stop_id,
            name=name,
            coordinates=coordinate,
            route_meta=route_meta,
            line_code=str(line_code) if line_code else None,
        )
    road_name = raw.get("road_name") or raw.get("RoadName")
    return BusStop(
        id=stop_id,
        name=name,
        coordinates=coordinate,
        route_meta=route_meta,
        road_name=str(road_name) if road_name else None,
    )


def parse_stops(records: Iterable[Any], kind: Optional[StopKind] = None) -> List[LocatedEntity]:
    parsed: List[LocatedEntity] = []
    skipped = 0
    for raw in records:
        stop = parse_stop(raw, kind)
        if stop is None:
            skipped += 1
            continue
        parsed.append(stop)
    if skipped:
        print(f"[stops] skipped {skipped} records without an id or coordinates")
    return parsed


__all__ = [
    "BusStop",
    "Coordinate",
    "LocatedEntity",
    "LocationSample",
    "RankedMatch",
    "RouteMeta",
    "StopKind",
    "TrainStation",
    "parse_stop",
    "parse_stops",
]
