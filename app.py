"""
Ride Alarm Service: stop matching, journey tracking and wake-up alarm

Purpose
=======
Track one rider along a bus or train route, show how far along the journey
they are, and wake them up (Web Push) when they reach their destination stop.

Key features
------------
- Nearest stop / k-nearest lookups over bundled bus stop and train station
  lists (grid index, rebuilt only when a list is replaced).
- One active journey at a time: itinerary from the start stop to the chosen
  destination, progress that never moves backward, "two stops away" heads-up
  and a one-shot arrival alarm.
- Location either posted by the client or simulated along the route (test
  mode). Without location permission the tracker keeps running on a fallback
  coordinate.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx pywebpush
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import asyncio, math, os, time
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query, Request

from alarm_devices import AlarmDeviceRegistry
from arrival_notifier import ArrivalNotifier, RecordingNotifier, WebPushArrivalNotifier
from journey_session import DEFAULT_TICK_S, JourneySession
from journey_tracker import (
    ApproachingEvent,
    ArrivalEvent,
    JourneyTracker,
    SegmentProjectionProgress,
    build_itinerary,
    start_from_location,
)
from location_source import (
    DEFAULT_INTERVAL_S,
    LocationProvider,
    PushedLocationProvider,
    SimulatedRouteProvider,
    build_simulated_path,
)
from nearest_match import INDEX_THRESHOLD, find_closest_stop, find_k_nearest
from stop_feed import StopFeedClient, StopFeedError, select_direction
from stop_repository import DEFAULT_DATA_DIRS, StopRepository, load_repository
from stops import Coordinate, LocatedEntity, LocationSample, StopKind, parse_stops

# ---------------------------
# Config
# ---------------------------
DATA_DIRS = DEFAULT_DATA_DIRS
PRIMARY_DATA_DIR = DATA_DIRS[0]
STOP_MATCH_MAX_KM = float(os.getenv("STOP_MATCH_MAX_KM", "1.0"))
LOCATION_INTERVAL_S = DEFAULT_INTERVAL_S
TRACKER_TICK_S = DEFAULT_TICK_S
NEARBY_DEFAULT_K = int(os.getenv("NEARBY_DEFAULT_K", "10"))
NEARBY_DEFAULT_MAX_M = float(os.getenv("NEARBY_DEFAULT_MAX_M", "1000"))

# Push notifications (Web Push)
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:alarms@example.com")
PUSH_SUBSCRIPTIONS_PATH = Path(
    os.getenv("PUSH_SUBSCRIPTIONS_PATH", str(PRIMARY_DATA_DIR / "alarm_devices.json"))
)
alarm_devices = AlarmDeviceRegistry(PUSH_SUBSCRIPTIONS_PATH)


def _build_notifier() -> ArrivalNotifier:
    if VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY:
        return WebPushArrivalNotifier(
            alarm_devices,
            vapid_private_key=VAPID_PRIVATE_KEY,
            vapid_subject=VAPID_SUBJECT,
        )
    print("[push] VAPID keys not configured; alarm events are recorded only")
    return RecordingNotifier()


class State:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.repository = StopRepository()
        self.notifier: ArrivalNotifier = _build_notifier()
        self.stop_feed: Optional[StopFeedClient] = None
        # Single active journey; starting a new one replaces it.
        self.session: Optional[JourneySession] = None
        self.provider: Optional[LocationProvider] = None
        self.last_error: str = ""
        self.last_error_ts: float = 0.0

    def record_error(self, message: str) -> None:
        self.last_error = message
        self.last_error_ts = time.time()


state = State()

# ---------------------------
# App & lifecycle
# ---------------------------
app = FastAPI(title="Ride Alarm")


@app.on_event("startup")
async def load_stop_lists() -> None:
    repository = load_repository(data_dirs=DATA_DIRS)
    async with state.lock:
        state.repository = repository
    print(f"[startup] stop lists loaded: {repository.counts()}")


@app.on_event("startup")
async def init_stop_feed() -> None:
    state.stop_feed = StopFeedClient.from_env()
    if state.stop_feed is None:
        print("[stop_feed] STOP_FEED_BASE not set; journeys need an explicit stop list")


@app.on_event("shutdown")
async def shutdown() -> None:
    async with state.lock:
        await _stop_session_locked()
    if state.stop_feed is not None:
        await state.stop_feed.aclose()
        state.stop_feed = None
    if isinstance(state.notifier, WebPushArrivalNotifier):
        await state.notifier.drain()


# ---------------------------
# Helpers
# ---------------------------
def _coerce_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _parse_kind(value: Any) -> StopKind:
    text = str(value or StopKind.BUS.value).strip().lower()
    try:
        return StopKind(text)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown stop kind: {value}")


def _require_coordinate(lat: Any, lon: Any) -> Coordinate:
    lat_f = _coerce_float(lat)
    lon_f = _coerce_float(lon)
    if lat_f is None or lon_f is None:
        raise HTTPException(status_code=400, detail="latitude and longitude must be finite numbers")
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lon_f <= 180.0):
        raise HTTPException(status_code=400, detail="latitude/longitude out of range")
    return Coordinate(lat_f, lon_f)


def _on_arrival(event: ArrivalEvent) -> None:
    state.notifier.notify_arrival(event)


def _on_approaching(event: ApproachingEvent) -> None:
    state.notifier.notify_approaching(event)


async def _stop_session_locked() -> None:
    session, state.session = state.session, None
    state.provider = None
    if session is not None:
        await session.stop()


def _journey_payload(session: JourneySession) -> Dict[str, Any]:
    snapshot = session.tracker.snapshot()
    snapshot["active"] = session.active
    snapshot["simulated"] = isinstance(session.provider, SimulatedRouteProvider)
    snapshot["using_fallback"] = session.using_fallback or snapshot["location_fallback"]
    return snapshot


async def _resolve_route_stops(payload: Dict[str, Any], kind: StopKind) -> List[LocatedEntity]:
    raw_stops = payload.get("stops")
    if isinstance(raw_stops, list):
        return parse_stops(raw_stops, kind)
    route = payload.get("route")
    if not route:
        raise HTTPException(status_code=400, detail="either stops or route is required")
    if state.stop_feed is None:
        raise HTTPException(status_code=503, detail="route stop feed not configured")
    repository = state.repository
    try:
        return await state.stop_feed.fetch_route_stops(
            str(route), kind, lookup=lambda stop_id: repository.get(kind, stop_id)
        )
    except StopFeedError as exc:
        print(f"[stop_feed] {exc}")
        state.record_error(str(exc))
        raise HTTPException(status_code=502, detail="upstream route stops request failed") from exc


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health():
    devices = await alarm_devices.summary()
    async with state.lock:
        return {
            "ok": not bool(state.last_error),
            "last_error": state.last_error or None,
            "last_error_ts": state.last_error_ts or None,
            "stops": state.repository.counts(),
            "journey_active": bool(state.session and state.session.active),
            "alarm_devices": devices,
        }


# ---------------------------
# REST: Stops
# ---------------------------
@app.get("/v1/stops/nearby")
async def stops_nearby(
    lat: float = Query(..., description="Latitude in degrees"),
    lon: float = Query(..., description="Longitude in degrees"),
    kind: str = Query("bus", description="bus or train"),
    k: int = Query(NEARBY_DEFAULT_K, ge=1, le=100),
    max_distance_m: float = Query(NEARBY_DEFAULT_MAX_M, gt=0),
):
    point = _require_coordinate(lat, lon)
    stop_kind = _parse_kind(kind)
    async with state.lock:
        stops = state.repository.stops(stop_kind)
        if len(stops) > INDEX_THRESHOLD:
            index = state.repository.index_for(stop_kind)
            matches = index.nearest_ranked(point, k, max_distance_m)
        else:
            matches = find_k_nearest(point.latitude, point.longitude, stops, k, max_distance_m)
    return {"kind": stop_kind.value, "stops": [m.to_dict() for m in matches]}


@app.get("/v1/stops/closest")
async def stops_closest(
    lat: float = Query(...),
    lon: float = Query(...),
    kind: str = Query("bus"),
    max_distance_km: float = Query(STOP_MATCH_MAX_KM, gt=0),
):
    point = _require_coordinate(lat, lon)
    stop_kind = _parse_kind(kind)
    async with state.lock:
        stops = state.repository.stops(stop_kind)
        index = state.repository.index_for(stop_kind) if len(stops) > INDEX_THRESHOLD else None
        closest = find_closest_stop(point.latitude, point.longitude, stops, max_distance_km, index=index)
    return {
        "kind": stop_kind.value,
        "stop": closest.match.to_dict() if closest.match else None,
        "index": closest.index_in_stops,
    }


# ---------------------------
# REST: Journey
# ---------------------------
@app.post("/v1/journey")
async def start_journey(payload: dict):
    destination_id = payload.get("destination_id")
    if not destination_id:
        raise HTTPException(status_code=400, detail="destination_id is required")
    destination_id = str(destination_id).strip()
    kind = _parse_kind(payload.get("kind"))
    start_stop_id = payload.get("start_stop_id")
    start_stop_id = str(start_stop_id).strip() if start_stop_id else None

    origin: Optional[Coordinate] = None
    if payload.get("lat") is not None or payload.get("lon") is not None:
        origin = _require_coordinate(payload.get("lat"), payload.get("lon"))

    route_stops = await _resolve_route_stops(payload, kind)
    direction = payload.get("direction")
    try:
        direction = int(direction) if direction is not None else None
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="direction must be an integer")
    chosen_direction, full_stops = select_direction(route_stops, direction, start_stop_id)
    if not full_stops:
        raise HTTPException(status_code=400, detail="route has no located stops")

    if start_stop_id is None and origin is not None:
        itinerary = start_from_location(
            full_stops, origin.latitude, origin.longitude, destination_id, STOP_MATCH_MAX_KM
        )
    else:
        itinerary = build_itinerary(full_stops, start_stop_id or full_stops[0].id, destination_id)

    tracker = JourneyTracker(
        itinerary,
        max_match_distance_km=STOP_MATCH_MAX_KM,
        partial_progress=SegmentProjectionProgress(),
        on_arrival=_on_arrival,
        on_approaching=_on_approaching,
    )
    provider: LocationProvider
    if payload.get("simulate"):
        provider = SimulatedRouteProvider(build_simulated_path(itinerary.stops))
    else:
        provider = PushedLocationProvider(permission_granted=payload.get("permission_granted", True) is not False)

    session = JourneySession(
        tracker,
        provider,
        location_interval_s=LOCATION_INTERVAL_S,
        tick_interval_s=TRACKER_TICK_S,
    )
    async with state.lock:
        await _stop_session_locked()
        await session.start()
        state.session = session
        state.provider = provider
        if origin is not None and isinstance(provider, PushedLocationProvider):
            sample = LocationSample(origin.latitude, origin.longitude, int(time.time() * 1000))
            provider.push(sample)
            session.deliver(sample)
        else:
            tracker.on_tick()
        response = _journey_payload(session)
    response["direction"] = chosen_direction
    return response


@app.get("/v1/journey")
async def get_journey():
    async with state.lock:
        if state.session is None:
            raise HTTPException(status_code=404, detail="no active journey")
        return _journey_payload(state.session)


@app.post("/v1/journey/location")
async def post_location(payload: dict):
    point = _require_coordinate(payload.get("latitude"), payload.get("longitude"))
    timestamp_ms = payload.get("timestamp_ms")
    try:
        timestamp_ms = int(timestamp_ms) if timestamp_ms is not None else int(time.time() * 1000)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="timestamp_ms must be an integer")
    partial = payload.get("partial_progress")
    partial_f = _coerce_float(partial) if partial is not None else None
    if partial is not None and partial_f is None:
        raise HTTPException(status_code=400, detail="partial_progress must be a finite number")

    sample = LocationSample(point.latitude, point.longitude, timestamp_ms)
    async with state.lock:
        session = state.session
        if session is None:
            raise HTTPException(status_code=404, detail="no active journey")
        if isinstance(state.provider, PushedLocationProvider):
            state.provider.push(sample)
        session.deliver(sample, partial_f)
        return _journey_payload(session)


@app.post("/v1/journey/permission")
async def set_location_permission(payload: dict):
    granted = payload.get("granted")
    if not isinstance(granted, bool):
        raise HTTPException(status_code=400, detail="granted must be a boolean")
    async with state.lock:
        if state.session is None:
            raise HTTPException(status_code=404, detail="no active journey")
        if isinstance(state.provider, PushedLocationProvider):
            state.provider.permission_granted = granted
        return {"granted": granted}


@app.post("/v1/journey/next-stop")
async def advance_journey():
    async with state.lock:
        if state.session is None:
            raise HTTPException(status_code=404, detail="no active journey")
        state.session.tracker.advance_to_next_stop()
        return _journey_payload(state.session)


@app.delete("/v1/journey")
async def end_journey():
    async with state.lock:
        session = state.session
        if session is None:
            raise HTTPException(status_code=404, detail="no active journey")
        arrived = session.tracker.state.is_alarm_triggered
        await _stop_session_locked()
    return {"stopped": True, "arrived": arrived}


# ---------------------------
# Push Notifications API
# ---------------------------
@app.get("/api/push/vapid-public-key")
async def get_vapid_public_key():
    """Return the VAPID public key for push subscription."""
    if not VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    return {"publicKey": VAPID_PUBLIC_KEY}


@app.post("/api/push/subscribe")
async def push_subscribe(request: Request):
    """Register a device for the wake-up alarm, optionally pinned to one stop."""
    if not VAPID_PUBLIC_KEY or not VAPID_PRIVATE_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    data = await request.json()
    destination_id = data.get("destination_id")
    if destination_id is not None:
        destination_id = str(destination_id).strip() or None
    try:
        is_new = await alarm_devices.register(
            data.get("endpoint"),
            data.get("keys", {}),
            user_agent=request.headers.get("user-agent"),
            destination_stop_id=destination_id,
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid subscription data")
    return {"status": "subscribed", "new": is_new, "destination_id": destination_id}


@app.post("/api/push/unsubscribe")
async def push_unsubscribe(request: Request):
    data = await request.json()
    endpoint = data.get("endpoint")
    if not endpoint:
        raise HTTPException(status_code=400, detail="Missing endpoint")
    removed = await alarm_devices.forget(endpoint)
    return {"status": "unsubscribed", "found": removed}
