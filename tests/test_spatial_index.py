import dataclasses
import random
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geo import haversine_distance_km
from spatial_index import SpatialGridIndex, cell_of
from stops import BusStop, Coordinate


def _stop(stop_id: str, lat: float, lon: float) -> BusStop:
    return BusStop(id=stop_id, name=f"Stop {stop_id}", coordinates=Coordinate(lat, lon))


def _random_stops(count: int, seed: int = 7):
    rng = random.Random(seed)
    return [
        _stop(str(i), 1.25 + rng.random() * 0.2, 103.7 + rng.random() * 0.3)
        for i in range(count)
    ]


def test_cell_key_is_lon_then_lat():
    assert cell_of(1.355, 103.815, 0.01) == (10381, 135)
    assert cell_of(-0.005, -0.005, 0.01) == (-1, -1)


@pytest.mark.parametrize("radius_km", [0.0, 0.05, 0.3, 1.0, 2.5, 10.0, 50.0])
def test_find_nearby_matches_brute_force(radius_km):
    stops = _random_stops(400)
    index = SpatialGridIndex.build(stops)
    rng = random.Random(11)
    for _ in range(20):
        lat = 1.25 + rng.random() * 0.2
        lon = 103.7 + rng.random() * 0.3
        expected = {
            s.id
            for s in stops
            if haversine_distance_km(lat, lon, s.latitude, s.longitude) <= radius_km
        }
        found = index.find_nearby(lat, lon, radius_km)
        assert {m.entity.id for m in found} == expected
        distances = [m.distance_km for m in found]
        assert distances == sorted(distances)


def test_entity_on_query_point_found_at_zero_radius():
    index = SpatialGridIndex.build([_stop("A", 1.3, 103.8)])
    found = index.find_nearby(1.3, 103.8, 0.0)
    assert [m.entity.id for m in found] == ["A"]


def test_non_finite_coordinates_are_skipped_and_counted():
    stops = [
        _stop("ok", 1.3, 103.8),
        _stop("nan", float("nan"), 103.8),
        _stop("inf", 1.3, float("inf")),
    ]
    index = SpatialGridIndex.build(stops)
    assert len(index) == 1
    assert index.skipped_count == 2
    assert [m.entity.id for m in index.find_nearby(1.3, 103.8, 1.0)] == ["ok"]


def test_bad_queries_return_empty():
    index = SpatialGridIndex.build(_random_stops(30))
    assert index.find_nearby(float("nan"), 103.8, 1.0) == []
    assert index.find_nearby(1.3, 103.8, -1.0) == []
    assert SpatialGridIndex.build([]).find_nearby(1.3, 103.8, 5.0) == []


def test_invalid_cell_size_rejected():
    with pytest.raises(ValueError):
        SpatialGridIndex.build([], cell_size_deg=0)


def test_index_is_immutable():
    index = SpatialGridIndex.build([_stop("A", 1.3, 103.8)])
    with pytest.raises(dataclasses.FrozenInstanceError):
        index.size = 5
    with pytest.raises(TypeError):
        index.cells[(0, 0)] = ()


def test_nearest_respects_k_and_distance():
    stops = [_stop(str(i), 1.3, 103.8 + i * 0.001) for i in range(10)]
    index = SpatialGridIndex.build(stops)

    nearest = index.nearest(Coordinate(1.3, 103.8), k=3, max_distance_meters=1000)
    assert [s.id for s in nearest] == ["0", "1", "2"]

    assert index.nearest(Coordinate(1.3, 104.5), k=5, max_distance_meters=1000) == []
    assert index.nearest(Coordinate(1.3, 103.8), k=0) == []

    ranked = index.nearest_ranked(Coordinate(1.3, 103.8), k=2, max_distance_meters=150)
    assert [m.entity.id for m in ranked] == ["0", "1"]
    assert ranked[1].distance_km == pytest.approx(0.111, abs=0.001)
