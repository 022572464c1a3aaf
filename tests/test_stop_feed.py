import asyncio
import sys
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from stop_feed import (
    StopFeedClient,
    StopFeedError,
    available_directions,
    route_stops_from_records,
    select_direction,
)
from stops import BusStop, Coordinate, StopKind

KNOWN = {
    "01012": BusStop(id="01012", name="Hotel Grand Pacific", coordinates=Coordinate(1.2968, 103.8525)),
    "01013": BusStop(id="01013", name="St. Joseph's Ch", coordinates=Coordinate(1.2976, 103.8532)),
    "01019": BusStop(id="01019", name="Bras Basah Cplx", coordinates=Coordinate(1.2967, 103.8522)),
}

ROUTE_ROWS = [
    {"BusStopCode": "01013", "Direction": 1, "StopSequence": 2},
    {"BusStopCode": "01012", "Direction": 1, "StopSequence": 1},
    {"BusStopCode": "01019", "Direction": 2, "StopSequence": 1},
    {"BusStopCode": "99999", "Direction": 2, "StopSequence": 2},
]


def test_route_rows_join_coordinates_from_lookup():
    stops = route_stops_from_records(ROUTE_ROWS, StopKind.BUS, KNOWN.get)
    assert [s.id for s in stops] == ["01013", "01012", "01019"]
    assert stops[0].name == "St. Joseph's Ch"
    assert stops[0].route_meta.sequence == 2
    assert available_directions(stops) == [1, 2]


def test_select_direction_sorts_by_sequence():
    stops = route_stops_from_records(ROUTE_ROWS, StopKind.BUS, KNOWN.get)
    direction, picked = select_direction(stops)
    assert direction == 1
    assert [s.id for s in picked] == ["01012", "01013"]


def test_select_direction_follows_start_stop():
    stops = route_stops_from_records(ROUTE_ROWS, StopKind.BUS, KNOWN.get)
    direction, picked = select_direction(stops, direction=1, start_stop_id="01019")
    assert direction == 2
    assert [s.id for s in picked] == ["01019"]


def test_select_direction_of_empty_route():
    assert select_direction([]) == (None, [])


def _client(handler) -> StopFeedClient:
    return StopFeedClient(
        "https://feed.example.com/v1/",
        "secret",
        transport=httpx.MockTransport(handler),
    )


def test_fetch_route_stops_sends_key_and_parses_value_list():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("AccountKey")
        return httpx.Response(200, json={"value": ROUTE_ROWS})

    async def scenario():
        client = _client(handler)
        try:
            return await client.fetch_route_stops("7", StopKind.BUS, KNOWN.get)
        finally:
            await client.aclose()

    stops = asyncio.run(scenario())
    assert seen["url"] == "https://feed.example.com/v1/routes/7/stops"
    assert seen["key"] == "secret"
    assert len(stops) == 3


def test_fetch_route_stops_wraps_http_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "maintenance"})

    async def scenario():
        client = _client(handler)
        try:
            await client.fetch_route_stops("7")
        finally:
            await client.aclose()

    with pytest.raises(StopFeedError):
        asyncio.run(scenario())


def test_fetch_route_stops_rejects_non_json():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    async def scenario():
        client = _client(handler)
        try:
            await client.fetch_route_stops("7")
        finally:
            await client.aclose()

    with pytest.raises(StopFeedError):
        asyncio.run(scenario())


def test_from_env_without_base_is_disabled(monkeypatch):
    import stop_feed

    monkeypatch.setattr(stop_feed, "STOP_FEED_BASE", "")
    assert StopFeedClient.from_env() is None
    monkeypatch.setattr(stop_feed, "STOP_FEED_BASE", "https://feed.example.com")
    client = StopFeedClient.from_env()
    assert client is not None
