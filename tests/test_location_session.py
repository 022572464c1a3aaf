import asyncio
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from journey_session import JourneySession
from journey_tracker import JourneyTracker, build_itinerary
from location_source import (
    FALLBACK_COORDINATE,
    LocationSubscription,
    PushedLocationProvider,
    SimulatedRouteProvider,
    StaticLocationProvider,
    build_simulated_path,
    watch_location,
)
from stops import BusStop, Coordinate, LocationSample


def _route(count: int = 5):
    return [
        BusStop(id=f"S{i}", name=f"Stop {i}", coordinates=Coordinate(1.30, 103.80 + i * 0.0045))
        for i in range(count)
    ]


def test_permission_denied_delivers_fallback_coordinate():
    received = []
    provider = PushedLocationProvider(permission_granted=False)
    subscription = LocationSubscription(provider, received.append, interval_s=60)

    asyncio.run(subscription.poll_once())

    assert subscription.using_fallback
    assert len(received) == 1
    sample = received[0]
    assert sample.is_fallback
    assert (sample.latitude, sample.longitude) == (
        FALLBACK_COORDINATE.latitude,
        FALLBACK_COORDINATE.longitude,
    )


def test_provider_recovers_after_permission_granted():
    received = []
    provider = PushedLocationProvider(permission_granted=False)
    subscription = LocationSubscription(provider, received.append, interval_s=60)

    async def scenario():
        await subscription.poll_once()
        provider.permission_granted = True
        provider.push(LocationSample(1.31, 103.81, 1000))
        await subscription.poll_once()

    asyncio.run(scenario())

    assert not subscription.using_fallback
    assert [s.is_fallback for s in received] == [True, False]


def test_no_fix_yet_delivers_nothing():
    received = []
    subscription = LocationSubscription(PushedLocationProvider(), received.append, interval_s=60)
    asyncio.run(subscription.poll_once())
    assert received == []
    assert subscription.delivered == 0


def test_no_callbacks_after_close():
    received = []

    async def scenario():
        provider = StaticLocationProvider(Coordinate(1.3, 103.8))
        async with watch_location(provider, received.append, interval_s=0.001) as subscription:
            while len(received) < 3:
                await asyncio.sleep(0.001)
        count = len(received)
        await asyncio.sleep(0.02)
        return subscription, count

    subscription, count = asyncio.run(scenario())
    assert subscription.closed
    assert len(received) == count


def test_simulated_path_runs_through_every_stop():
    stops = _route(3)
    path = build_simulated_path(stops, points_per_segment=5)
    assert len(path) == 11
    assert path[0] == stops[0].coordinates
    assert path[5] == stops[1].coordinates
    assert path[-1] == stops[2].coordinates

    with pytest.raises(ValueError):
        build_simulated_path(stops, points_per_segment=0)
    assert build_simulated_path([]) == []


def test_simulated_provider_walks_then_holds_last_point():
    path = [Coordinate(1.30, 103.80), Coordinate(1.30, 103.81)]
    provider = SimulatedRouteProvider(path, clock=lambda: 42)

    async def poll(times):
        return [await provider.current_location() for _ in range(times)]

    samples = asyncio.run(poll(4))
    assert [s.longitude for s in samples] == [103.80, 103.81, 103.81, 103.81]
    assert samples[0].timestamp_ms == 42
    assert provider.finished

    assert provider.set_position(0)
    assert not provider.set_position(9)


def test_simulated_session_reaches_destination_once():
    stops = _route()
    arrivals = []
    tracker = JourneyTracker(build_itinerary(stops, "S0", "S4"), on_arrival=arrivals.append)
    provider = SimulatedRouteProvider(build_simulated_path(stops))

    async def scenario():
        async with JourneySession(
            tracker, provider, location_interval_s=0.001, tick_interval_s=0.005
        ) as session:
            for _ in range(2000):
                if provider.finished and tracker.state.is_alarm_triggered:
                    break
                await asyncio.sleep(0.001)
            await asyncio.sleep(0.02)
        return session

    session = asyncio.run(scenario())

    assert tracker.state.is_alarm_triggered
    assert len(arrivals) == 1
    assert tracker.state.displayed_progress == 100.0
    assert not session.active
    with pytest.raises(RuntimeError):
        session.deliver(LocationSample(1.3, 103.8, 0))


def test_duplicate_fix_is_processed_once():
    stops = _route()
    tracker = JourneyTracker(build_itinerary(stops, "S0", "S4"))
    provider = PushedLocationProvider()

    async def scenario():
        session = JourneySession(tracker, provider, location_interval_s=60, tick_interval_s=60)
        await session.start()
        try:
            sample = LocationSample(stops[1].latitude, stops[1].longitude, 5000)
            provider.push(sample)
            session.deliver(sample)
            await session.subscription.poll_once()
        finally:
            await session.stop()

    asyncio.run(scenario())
    assert tracker.state.samples_seen == 1
    assert tracker.state.current_stop_index == 1


def test_session_cannot_start_twice():
    tracker = JourneyTracker(build_itinerary(_route(), "S0", "S4"))

    async def scenario():
        session = JourneySession(
            tracker, PushedLocationProvider(), location_interval_s=60, tick_interval_s=60
        )
        await session.start()
        try:
            with pytest.raises(RuntimeError):
                await session.start()
        finally:
            await session.stop()
        assert not session.active

    asyncio.run(scenario())


def test_session_uses_fallback_when_permission_denied():
    tracker = JourneyTracker(build_itinerary(_route(), "S0", "S4"))
    provider = PushedLocationProvider(permission_granted=False)

    async def scenario():
        async with JourneySession(
            tracker, provider, location_interval_s=0.001, tick_interval_s=60
        ) as session:
            while tracker.state.samples_seen == 0:
                await asyncio.sleep(0.001)
            return session.using_fallback

    assert asyncio.run(scenario())
    # The fallback point is far from this route, so the stop stays put.
    assert tracker.state.location_fallback
    assert tracker.state.current_stop_index == 0
    assert tracker.state.unmatched_samples >= 1
