from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import json
import os

from spatial_index import DEFAULT_CELL_SIZE_DEG, SpatialGridIndex
from stops import LocatedEntity, StopKind, parse_stops


DEFAULT_DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]
DEFAULT_BUS_STOPS_PATH = Path(os.getenv("STOPS_BUS_PATH", "stops/bus_stops.json"))
DEFAULT_TRAIN_STATIONS_PATH = Path(os.getenv("STOPS_TRAIN_PATH", "stops/train_stations.json"))


class StopRepository:
    """
    Owns one stop set per kind and the spatial index built over it.

    Indices are built lazily on first use and reused until the set is
    replaced or explicitly invalidated. Construct one repository per service
    (or per test) and pass it to whoever needs lookups.
    """

    def __init__(self, cell_size_deg: float = DEFAULT_CELL_SIZE_DEG):
        self.cell_size_deg = cell_size_deg
        self._stops: Dict[StopKind, Tuple[LocatedEntity, ...]] = {}
        self._indices: Dict[StopKind, SpatialGridIndex] = {}
        self._by_id: Dict[StopKind, Dict[str, LocatedEntity]] = {}

    def replace(self, kind: StopKind, stops: Iterable[LocatedEntity]) -> None:
        snapshot = tuple(stops)
        self._stops[kind] = snapshot
        self._by_id[kind] = {stop.id: stop for stop in snapshot}
        self.invalidate(kind)
        print(f"[stops] loaded {len(snapshot)} {kind.value} entities")

    def invalidate(self, kind: Optional[StopKind] = None) -> None:
        if kind is None:
            self._indices.clear()
        else:
            self._indices.pop(kind, None)

    def stops(self, kind: StopKind) -> Tuple[LocatedEntity, ...]:
        return self._stops.get(kind, ())

    def get(self, kind: StopKind, stop_id: str) -> Optional[LocatedEntity]:
        return self._by_id.get(kind, {}).get(stop_id)

    def index_for(self, kind: StopKind) -> SpatialGridIndex:
        index = self._indices.get(kind)
        if index is None:
            index = SpatialGridIndex.build(self.stops(kind), self.cell_size_deg)
            self._indices[kind] = index
        return index

    def has_index(self, kind: StopKind) -> bool:
        return kind in self._indices

    def counts(self) -> Dict[str, int]:
        return {kind.value: len(stops) for kind, stops in self._stops.items()}


def _read_data_file(
    path: Path,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> Tuple[Optional[Path], Optional[str]]:
    """Read a data file from one of the configured data directories."""
    if data_dirs is None:
        data_dirs = DEFAULT_DATA_DIRS
    path_obj = Path(path)
    candidates: List[Path]
    if path_obj.is_absolute():
        candidates = [path_obj]
    else:
        candidates = [base / path_obj for base in data_dirs]
        candidates.append(path_obj)
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            return candidate, candidate.read_text()
        except OSError as exc:
            print(f"[stops] failed to read data file {candidate}: {exc}")
            return candidate, None
    return None, None


def load_stops_config(
    path: Path,
    kind: StopKind,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> List[LocatedEntity]:
    """Load a bundled stop list (a JSON array, or ``{"stops": [...]}``)."""
    resolved_path, raw_text = _read_data_file(path, data_dirs=data_dirs)
    if not raw_text:
        return []
    try:
        raw = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        print(f"[stops] failed to parse stop file {resolved_path or path}: {exc}")
        return []
    records = raw.get("stops") if isinstance(raw, dict) else raw
    if not isinstance(records, list):
        print(f"[stops] stop file {resolved_path or path} has no stop list")
        return []
    return parse_stops(records, kind)


def load_repository(
    *,
    bus_path: Path = DEFAULT_BUS_STOPS_PATH,
    train_path: Path = DEFAULT_TRAIN_STATIONS_PATH,
    data_dirs: Optional[Sequence[Path]] = None,
) -> StopRepository:
    repository = StopRepository()
    repository.replace(StopKind.BUS, load_stops_config(bus_path, StopKind.BUS, data_dirs=data_dirs))
    repository.replace(StopKind.TRAIN, load_stops_config(train_path, StopKind.TRAIN, data_dirs=data_dirs))
    return repository


__all__ = ["StopRepository", "load_repository", "load_stops_config"]
