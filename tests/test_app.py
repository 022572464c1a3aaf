import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module
from alarm_devices import AlarmDeviceRegistry
from arrival_notifier import RecordingNotifier
from stop_repository import StopRepository
from stops import BusStop, Coordinate, StopKind, TrainStation

LAT = 1.30
BASE_LON = 103.80
SPACING_DEG = 0.0045


def _route_payload(count: int = 5):
    return [
        {"id": f"S{i}", "name": f"Stop {i}", "latitude": LAT, "longitude": BASE_LON + i * SPACING_DEG}
        for i in range(count)
    ]


def _repository() -> StopRepository:
    repository = StopRepository()
    repository.replace(
        StopKind.BUS,
        [
            BusStop(id=f"B{i}", name=f"Bus {i}", coordinates=Coordinate(LAT, BASE_LON + i * 0.002))
            for i in range(30)
        ],
    )
    repository.replace(
        StopKind.TRAIN,
        [
            TrainStation(id="NS25", name="City Hall", coordinates=Coordinate(1.2931, 103.8520)),
            TrainStation(id="EW13", name="City Hall", coordinates=Coordinate(1.2932, 103.8521)),
            TrainStation(id="NS1", name="Jurong East", coordinates=Coordinate(1.3331, 103.7422)),
        ],
    )
    return repository


@pytest.fixture
def client(monkeypatch, tmp_path):
    repository = _repository()
    monkeypatch.setattr(app_module, "state", app_module.State())
    monkeypatch.setattr(app_module, "load_repository", lambda **kwargs: repository)
    monkeypatch.setattr(app_module, "LOCATION_INTERVAL_S", 60.0)
    monkeypatch.setattr(app_module, "TRACKER_TICK_S", 60.0)
    monkeypatch.setattr(
        app_module, "alarm_devices", AlarmDeviceRegistry(tmp_path / "devices.json")
    )
    with TestClient(app_module.app) as test_client:
        yield test_client


def _start(client, **overrides):
    body = {"stops": _route_payload(), "start_stop_id": "S0", "destination_id": "S4"}
    body.update(overrides)
    return client.post("/v1/journey", json=body)


def _post_stop(client, index: int):
    return client.post(
        "/v1/journey/location",
        json={"latitude": LAT, "longitude": BASE_LON + index * SPACING_DEG, "timestamp_ms": 1000 + index},
    )


def test_health_reports_loaded_stops(client):
    response = client.get("/v1/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["stops"] == {"bus": 30, "train": 3}
    assert payload["journey_active"] is False


def test_nearby_bus_stops_use_the_index(client):
    response = client.get(
        "/v1/stops/nearby", params={"lat": LAT, "lon": BASE_LON, "k": 3, "max_distance_m": 500}
    )
    assert response.status_code == 200
    assert [s["id"] for s in response.json()["stops"]] == ["B0", "B1", "B2"]
    assert app_module.state.repository.has_index(StopKind.BUS)


def test_nearby_train_stations(client):
    response = client.get(
        "/v1/stops/nearby", params={"lat": 1.2931, "lon": 103.8520, "kind": "train", "k": 5}
    )
    assert [s["id"] for s in response.json()["stops"]] == ["NS25", "EW13"]


def test_nearby_rejects_unknown_kind(client):
    response = client.get("/v1/stops/nearby", params={"lat": LAT, "lon": BASE_LON, "kind": "ferry"})
    assert response.status_code == 400


def test_closest_stop_or_none(client):
    found = client.get("/v1/stops/closest", params={"lat": LAT + 0.0005, "lon": BASE_LON + 0.004})
    assert found.json()["stop"]["id"] == "B2"
    assert found.json()["index"] == 2

    missing = client.get("/v1/stops/closest", params={"lat": LAT + 1.0, "lon": BASE_LON})
    assert missing.json() == {"kind": "bus", "stop": None, "index": -1}


def test_journey_runs_to_a_single_alarm(client):
    started = _start(client)
    assert started.status_code == 200
    snapshot = started.json()
    assert snapshot["current_stop_index"] == 0
    assert snapshot["displayed_progress"] == 0.0
    assert snapshot["mood"] == "sleeping"
    assert snapshot["off_route"] is False
    assert snapshot["status"] == "Now approaching: Stop 1 (4 stops away)"

    alert = _post_stop(client, 2).json()
    assert alert["mood"] == "alert"
    assert alert["status"] == "Two stops away from: Stop 4! Get ready to alight!"

    arrived = _post_stop(client, 4).json()
    assert arrived["is_alarm_triggered"] is True
    assert arrived["phase"] == "triggered"
    assert arrived["displayed_progress"] == 100.0
    assert arrived["status"] == "Arrived at Stop 4! Time to get off."

    # Noisy fix back at stop 3 does not undo progress or re-fire.
    again = _post_stop(client, 3).json()
    assert again["displayed_progress"] == 100.0
    _post_stop(client, 4)

    notifier = app_module.state.notifier
    assert isinstance(notifier, RecordingNotifier)
    assert [e.stop_id for e in notifier.arrivals] == ["S4"]
    assert len(notifier.approaching) == 1

    ended = client.delete("/v1/journey")
    assert ended.json() == {"stopped": True, "arrived": True}
    assert client.get("/v1/journey").status_code == 404


def test_unknown_destination_warns_and_uses_last_stop(client):
    snapshot = _start(client, destination_id="nowhere").json()
    assert snapshot["destination"]["id"] == "S4"
    assert snapshot["warnings"]


def test_start_from_current_location(client):
    snapshot = _start(client, start_stop_id=None, lat=LAT, lon=BASE_LON + SPACING_DEG).json()
    assert snapshot["stops"][0]["id"] == "S1"
    assert snapshot["destination_index"] == 3
    assert snapshot["last_location"]["latitude"] == LAT


def test_new_journey_replaces_the_active_one(client):
    _start(client)
    first = app_module.state.session
    _start(client, destination_id="S2")
    assert not first.active
    assert app_module.state.session is not first
    assert client.get("/v1/journey").json()["destination"]["id"] == "S2"


def test_journey_requires_destination_and_stops(client):
    assert client.post("/v1/journey", json={"stops": _route_payload()}).status_code == 400
    assert client.post("/v1/journey", json={"destination_id": "S4"}).status_code == 400
    # Route lookups need the upstream feed.
    response = client.post("/v1/journey", json={"route": "7", "destination_id": "S4"})
    assert response.status_code == 503


def test_location_validation(client):
    assert client.post("/v1/journey/location", json={"latitude": 1.3, "longitude": 103.8}).status_code == 404
    _start(client)
    bad = client.post("/v1/journey/location", json={"latitude": "north", "longitude": 103.8})
    assert bad.status_code == 400
    out_of_range = client.post("/v1/journey/location", json={"latitude": 91, "longitude": 103.8})
    assert out_of_range.status_code == 400


def test_partial_progress_override(client):
    _start(client)
    snapshot = client.post(
        "/v1/journey/location",
        json={"latitude": LAT, "longitude": BASE_LON + SPACING_DEG, "partial_progress": 50},
    ).json()
    assert snapshot["current_stop_index"] == 1
    assert snapshot["displayed_progress"] == pytest.approx(37.5)


def test_next_stop_control_and_permission(client):
    _start(client)
    snapshot = client.post("/v1/journey/next-stop").json()
    assert snapshot["current_stop_index"] == 1

    assert client.post("/v1/journey/permission", json={"granted": "yes"}).status_code == 400
    assert client.post("/v1/journey/permission", json={"granted": False}).json() == {"granted": False}
    assert app_module.state.provider.permission_granted is False


def test_push_endpoints(client, monkeypatch):
    assert client.get("/api/push/vapid-public-key").status_code == 503

    monkeypatch.setattr(app_module, "VAPID_PUBLIC_KEY", "public")
    monkeypatch.setattr(app_module, "VAPID_PRIVATE_KEY", "private")
    assert client.get("/api/push/vapid-public-key").json() == {"publicKey": "public"}

    subscription = {"endpoint": "https://push.example/a", "keys": {"p256dh": "key", "auth": "auth"}}
    first = client.post("/api/push/subscribe", json=subscription)
    assert first.json() == {"status": "subscribed", "new": True, "destination_id": None}
    assert client.post("/api/push/subscribe", json={"endpoint": "x"}).status_code == 400

    removed = client.post("/api/push/unsubscribe", json={"endpoint": "https://push.example/a"})
    assert removed.json() == {"status": "unsubscribed", "found": True}


def test_subscribe_can_pin_a_destination(client, monkeypatch):
    monkeypatch.setattr(app_module, "VAPID_PUBLIC_KEY", "public")
    monkeypatch.setattr(app_module, "VAPID_PRIVATE_KEY", "private")
    subscription = {
        "endpoint": "https://push.example/pinned",
        "keys": {"p256dh": "key", "auth": "auth"},
        "destination_id": " S4 ",
    }
    pinned = client.post("/api/push/subscribe", json=subscription).json()
    assert pinned == {"status": "subscribed", "new": True, "destination_id": "S4"}

    health = client.get("/v1/health").json()
    assert health["alarm_devices"] == {"devices": 1, "pinned": 1}

    refreshed = client.post(
        "/api/push/subscribe", json={**subscription, "destination_id": ""}
    ).json()
    assert refreshed == {"status": "subscribed", "new": False, "destination_id": None}
    assert client.get("/v1/health").json()["alarm_devices"] == {"devices": 1, "pinned": 0}
