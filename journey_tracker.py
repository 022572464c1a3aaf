from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple
import math

from alarm_policy import Mood, evaluate
from geo import haversine_distance_km, is_point_near_path, km_to_m, project_onto_segment
from nearest_match import DEFAULT_MAX_DISTANCE_KM, INDEX_THRESHOLD, find_closest_stop
from spatial_index import SpatialGridIndex
from stops import LocatedEntity, LocationSample


class Phase(str, Enum):
    NOT_STARTED = "not_started"
    IN_TRANSIT = "in_transit"
    APPROACHING = "approaching"
    TRIGGERED = "triggered"


@dataclass(frozen=True)
class Itinerary:
    """Stops for one directional ride, start stop through destination inclusive."""
    stops: Tuple[LocatedEntity, ...]
    start_index: int  # position of stops[0] in the full route list
    route_destination_index: int  # position of stops[-1] in the full route list
    warnings: Tuple[str, ...] = ()

    @property
    def destination(self) -> LocatedEntity:
        return self.stops[-1]

    @property
    def destination_index(self) -> int:
        return len(self.stops) - 1

    def __len__(self) -> int:
        return len(self.stops)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stops": [stop.to_dict() for stop in self.stops],
            "start_index": self.start_index,
            "route_destination_index": self.route_destination_index,
            "warnings": list(self.warnings),
        }


def _index_of(stops: Sequence[LocatedEntity], stop_id: Optional[str]) -> int:
    if stop_id is None:
        return -1
    return next((i for i, stop in enumerate(stops) if stop.id == stop_id), -1)


def build_itinerary(
    full_stops: Sequence[LocatedEntity],
    start_stop_id: Optional[str],
    destination_stop_id: str,
) -> Itinerary:
    """Slice a full directional stop list down to the rider's journey.

    Fallbacks (recorded as warnings, never raised):
    - unknown start stop: ride from the first stop of the route
    - unknown destination: ride to the last stop of the route
    - destination before start: a one-stop journey at the start stop
    """
    if not full_stops:
        raise ValueError("route has no stops")

    warnings: List[str] = []

    start_index = _index_of(full_stops, start_stop_id)
    if start_index < 0:
        start_index = 0
        warnings.append(
            f"start stop {start_stop_id!r} not on this route; starting from {full_stops[0].name}"
        )

    destination_index = _index_of(full_stops, destination_stop_id)
    if destination_index < 0:
        destination_index = len(full_stops) - 1
        warnings.append(
            f"destination {destination_stop_id!r} not on this route; "
            f"using last stop {full_stops[-1].name}"
        )

    if destination_index < start_index:
        warnings.append(
            f"destination {full_stops[destination_index].name} is behind the start stop; "
            "tracking the start stop only"
        )
        destination_index = start_index

    for message in warnings:
        print(f"[journey] WARNING: {message}")

    return Itinerary(
        stops=tuple(full_stops[start_index:destination_index + 1]),
        start_index=start_index,
        route_destination_index=destination_index,
        warnings=tuple(warnings),
    )


def start_from_location(
    full_stops: Sequence[LocatedEntity],
    lat: float,
    lon: float,
    destination_stop_id: str,
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
) -> Itinerary:
    """Build an itinerary starting at whichever route stop the rider is at."""
    closest = find_closest_stop(lat, lon, full_stops, max_distance_km)
    start_id = closest.match.entity.id if closest.match else None
    return build_itinerary(full_stops, start_id, destination_stop_id)


@dataclass(frozen=True)
class ArrivalEvent:
    stop_id: str
    stop_name: str
    triggered_at: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stop_id": self.stop_id,
            "stop_name": self.stop_name,
            "triggered_at": self.triggered_at.isoformat().replace("+00:00", "Z"),
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass(frozen=True)
class ApproachingEvent:
    stop_id: str
    stop_name: str
    stops_remaining: int
    distance_m: Optional[float]


class PartialProgressStrategy(Protocol):
    def __call__(
        self,
        itinerary: Itinerary,
        current_stop_index: int,
        sample: Optional[LocationSample],
    ) -> float:
        ...


class NoPartialProgress:
    """Progress only moves when the matched stop changes."""

    def __call__(self, itinerary: Itinerary, current_stop_index: int, sample: Optional[LocationSample]) -> float:
        return 0.0


class SegmentProjectionProgress:
    """Projects the live position onto the segment toward the next stop."""

    def __call__(self, itinerary: Itinerary, current_stop_index: int, sample: Optional[LocationSample]) -> float:
        if sample is None or current_stop_index < 0 or current_stop_index >= itinerary.destination_index:
            return 0.0
        here = itinerary.stops[current_stop_index]
        ahead = itinerary.stops[current_stop_index + 1]
        fraction = project_onto_segment(
            sample.latitude,
            sample.longitude,
            (here.latitude, here.longitude),
            (ahead.latitude, ahead.longitude),
        )
        if math.isnan(fraction):
            return 0.0
        return fraction * 100.0


@dataclass
class TrackingState:
    """
    Per-session tracking state.

    Watermarks (``highest_progress_percent`` and ``highest_segment_progress``)
    only ever grow, so the rendered progress never goes backward even when
    the matched stop index does.
    """
    current_stop_index: int
    destination_index: int
    highest_progress_percent: float = 0.0
    highest_segment_progress: Dict[int, float] = field(default_factory=dict)
    is_alarm_triggered: bool = False
    mood: Mood = Mood.SLEEPING
    phase: Phase = Phase.NOT_STARTED
    status_text: str = "Starting your journey..."
    partial_progress: float = 0.0
    distance_to_destination_m: Optional[float] = None
    last_location: Optional[LocationSample] = None
    location_fallback: bool = False
    samples_seen: int = 0
    unmatched_samples: int = 0
    off_route: bool = False
    off_route_samples: int = 0

    @property
    def displayed_progress(self) -> float:
        return self.highest_progress_percent

    @property
    def stops_remaining(self) -> int:
        if self.current_stop_index < 0:
            return self.destination_index
        return max(self.destination_index - self.current_stop_index, 0)


ArrivalCallback = Callable[[ArrivalEvent], None]
ApproachingCallback = Callable[[ApproachingEvent], None]


def _plural_stops(count: int) -> str:
    return f"{count} stop away" if count == 1 else f"{count} stops away"


class JourneyTracker:
    """
    Follows one rider along an itinerary and raises the arrival alarm once.

    Fed by two event sources: ``on_location`` for every position fix and
    ``on_tick`` from a periodic timer that re-evaluates with the last known
    position. Both must run on the same event loop.
    """

    def __init__(
        self,
        itinerary: Itinerary,
        *,
        max_match_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
        partial_progress: Optional[PartialProgressStrategy] = None,
        on_arrival: Optional[ArrivalCallback] = None,
        on_approaching: Optional[ApproachingCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not itinerary.stops:
            raise ValueError("itinerary has no stops")
        self.itinerary = itinerary
        self.max_match_distance_km = max_match_distance_km
        self.partial_progress = partial_progress or NoPartialProgress()
        self.on_arrival = on_arrival
        self.on_approaching = on_approaching
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._approach_announced = False
        self.arrival_event: Optional[ArrivalEvent] = None

        # Itinerary is fixed for the session, so its index is built once.
        self._index: Optional[SpatialGridIndex] = None
        if len(itinerary.stops) > INDEX_THRESHOLD:
            self._index = SpatialGridIndex.build(itinerary.stops)
        self._path = [(stop.latitude, stop.longitude) for stop in itinerary.stops]

        self.state = TrackingState(
            current_stop_index=0,
            destination_index=itinerary.destination_index,
        )
        print(
            f"[journey] tracking {len(itinerary)} stops "
            f"{itinerary.stops[0].name} -> {itinerary.destination.name}"
        )

    # Event sources -------------------------------------------------

    def on_location(self, sample: LocationSample, partial_progress: Optional[float] = None) -> TrackingState:
        """Process a fresh position fix."""
        state = self.state
        state.last_location = sample
        state.location_fallback = sample.is_fallback
        state.samples_seen += 1

        closest = find_closest_stop(
            sample.latitude,
            sample.longitude,
            self.itinerary.stops,
            self.max_match_distance_km,
            index=self._index,
        )
        if closest.found:
            # Not forced monotonic; GPS noise may move this backward.
            state.current_stop_index = closest.index_in_stops
        else:
            state.unmatched_samples += 1
        self._check_route(sample)

        return self._evaluate(sample, partial_progress)

    def _check_route(self, sample: LocationSample) -> None:
        state = self.state
        near = is_point_near_path(
            sample.latitude, sample.longitude, self._path, self.max_match_distance_km
        )
        if near:
            if state.off_route:
                print("[journey] back on route")
            state.off_route = False
            return
        if not state.off_route:
            print(
                f"[journey] WARNING: fix {sample.latitude:.5f},{sample.longitude:.5f} "
                f"is more than {self.max_match_distance_km} km from the route"
            )
        state.off_route = True
        state.off_route_samples += 1

    def on_tick(self) -> TrackingState:
        """Re-evaluate with the last known position (if any)."""
        return self._evaluate(self.state.last_location, None)

    def set_current_stop(self, index: int, partial_progress: Optional[float] = None) -> TrackingState:
        """Force the matched stop, e.g. from a manual "next stop" control."""
        if not 0 <= index <= self.itinerary.destination_index:
            raise IndexError(f"stop index {index} outside itinerary of {len(self.itinerary)} stops")
        self.state.current_stop_index = index
        return self._evaluate(self.state.last_location, partial_progress)

    def advance_to_next_stop(self) -> TrackingState:
        next_index = min(self.state.current_stop_index + 1, self.itinerary.destination_index)
        return self.set_current_stop(max(next_index, 0))

    # Evaluation ----------------------------------------------------

    def _distance_to_destination_m(self, sample: Optional[LocationSample]) -> Optional[float]:
        if sample is None:
            return None
        destination = self.itinerary.destination
        distance_km = haversine_distance_km(
            sample.latitude, sample.longitude, destination.latitude, destination.longitude
        )
        return km_to_m(distance_km)

    def _partial(self, sample: Optional[LocationSample], override: Optional[float]) -> float:
        if override is not None:
            value = float(override)
        else:
            value = self.partial_progress(self.itinerary, self.state.current_stop_index, sample)
        if math.isnan(value):
            return 0.0
        return min(max(value, 0.0), 100.0)

    def _evaluate(self, sample: Optional[LocationSample], partial_override: Optional[float]) -> TrackingState:
        state = self.state
        state.distance_to_destination_m = self._distance_to_destination_m(sample)
        state.partial_progress = self._partial(sample, partial_override)

        decision = evaluate(
            state.current_stop_index,
            state.destination_index,
            state.distance_to_destination_m,
            already_triggered=state.is_alarm_triggered,
        )
        state.mood = decision.mood
        if decision.fire_arrival and not state.is_alarm_triggered:
            state.is_alarm_triggered = True
            self._fire_arrival(sample)

        if state.is_alarm_triggered:
            state.phase = Phase.TRIGGERED
        elif state.mood is Mood.ALERT:
            state.phase = Phase.APPROACHING
            self._announce_approach()
        else:
            state.phase = Phase.IN_TRANSIT

        self._update_progress()
        state.status_text = self._status_text()
        return state

    def _update_progress(self) -> None:
        state = self.state
        total = state.destination_index
        current = max(state.current_stop_index, 0)

        if state.is_alarm_triggered or total <= 0:
            overall = 100.0
        else:
            completed = min(current, total)
            overall = (completed / total) * 100 + (state.partial_progress / 100) * (100 / total)
            overall = min(max(overall, 0.0), 100.0)

        state.highest_progress_percent = max(overall, state.highest_progress_percent)

        for segment in range(total):
            if state.is_alarm_triggered or segment < current:
                value = 100.0
            elif segment == current:
                value = state.partial_progress
            else:
                value = 0.0
            previous = state.highest_segment_progress.get(segment, 0.0)
            state.highest_segment_progress[segment] = max(value, previous)

    def _status_text(self) -> str:
        state = self.state
        destination = self.itinerary.destination
        if state.is_alarm_triggered:
            return f"Arrived at {destination.name}! Time to get off."
        if state.mood is Mood.ALERT:
            if state.current_stop_index == state.destination_index - 2:
                return f"Two stops away from: {destination.name}! Get ready to alight!"
            return f"Almost at {destination.name}! Get ready to alight!"
        if state.current_stop_index < 0:
            return "Looking for the nearest stop..."
        remaining = state.stops_remaining
        next_index = min(state.current_stop_index + 1, state.destination_index)
        next_stop = self.itinerary.stops[next_index]
        return f"Now approaching: {next_stop.name} ({_plural_stops(remaining)})"

    # Outbound events -----------------------------------------------

    def _fire_arrival(self, sample: Optional[LocationSample]) -> None:
        destination = self.itinerary.destination
        event = ArrivalEvent(
            stop_id=destination.id,
            stop_name=destination.name,
            triggered_at=self._clock(),
            latitude=sample.latitude if sample else None,
            longitude=sample.longitude if sample else None,
        )
        self.arrival_event = event
        print(f"[journey] arrival alarm: stop={destination.id} name={destination.name}")
        if self.on_arrival is None:
            return
        try:
            self.on_arrival(event)
        except Exception as exc:
            print(f"[journey] arrival callback failed: {exc}")

    def _announce_approach(self) -> None:
        if self._approach_announced:
            return
        self._approach_announced = True
        destination = self.itinerary.destination
        event = ApproachingEvent(
            stop_id=destination.id,
            stop_name=destination.name,
            stops_remaining=self.state.stops_remaining,
            distance_m=self.state.distance_to_destination_m,
        )
        print(f"[journey] approaching: stop={destination.id} remaining={event.stops_remaining}")
        if self.on_approaching is None:
            return
        try:
            self.on_approaching(event)
        except Exception as exc:
            print(f"[journey] approaching callback failed: {exc}")

    # Presentation --------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        state = self.state
        current = state.current_stop_index
        current_stop = self.itinerary.stops[current] if 0 <= current < len(self.itinerary) else None
        return {
            "current_stop_index": current,
            "current_stop": current_stop.to_dict() if current_stop else None,
            "destination_index": state.destination_index,
            "destination": self.itinerary.destination.to_dict(),
            "displayed_progress": round(state.displayed_progress, 3),
            "segment_progress": {
                str(segment): round(value, 3)
                for segment, value in sorted(state.highest_segment_progress.items())
            },
            "stops_remaining": state.stops_remaining,
            "mood": state.mood.value,
            "phase": state.phase.value,
            "status": state.status_text,
            "is_alarm_triggered": state.is_alarm_triggered,
            "distance_to_destination_m": state.distance_to_destination_m,
            "location_fallback": state.location_fallback,
            "off_route": state.off_route,
            "off_route_samples": state.off_route_samples,
            "last_location": (
                {
                    "latitude": state.last_location.latitude,
                    "longitude": state.last_location.longitude,
                    "timestamp_ms": state.last_location.timestamp_ms,
                }
                if state.last_location
                else None
            ),
            "arrival": self.arrival_event.to_dict() if self.arrival_event else None,
            "warnings": list(self.itinerary.warnings),
            "stops": [stop.to_dict() for stop in self.itinerary.stops],
        }


__all__ = [
    "ApproachingEvent",
    "ArrivalEvent",
    "Itinerary",
    "JourneyTracker",
    "NoPartialProgress",
    "Phase",
    "SegmentProjectionProgress",
    "TrackingState",
    "build_itinerary",
    "start_from_location",
]
