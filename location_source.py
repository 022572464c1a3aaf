"""Location stream feeding the journey tracker.

Providers are polled on a fixed interval by ``watch_location``. A provider
that cannot produce positions (permission denied, no sensor) raises
``LocationUnavailable``; the watcher then keeps delivering the fallback
coordinate on the same interval, flagged with ``is_fallback``.
"""
from __future__ import annotations

import asyncio
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional, Protocol, Sequence

from stops import Coordinate, LocatedEntity, LocationSample


DEFAULT_INTERVAL_S = float(os.getenv("LOCATION_INTERVAL_S", "3"))
# Central Singapore, used when no real fix can be obtained.
FALLBACK_COORDINATE = Coordinate(1.3521, 103.8198)


class LocationUnavailable(Exception):
    """Raised by a provider when positions cannot be obtained."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def fallback_sample(timestamp_ms: Optional[int] = None) -> LocationSample:
    return LocationSample(
        latitude=FALLBACK_COORDINATE.latitude,
        longitude=FALLBACK_COORDINATE.longitude,
        timestamp_ms=timestamp_ms if timestamp_ms is not None else _now_ms(),
        is_fallback=True,
    )


class LocationProvider(Protocol):
    async def current_location(self) -> Optional[LocationSample]:
        """Latest position, None when there is nothing new to report."""
        ...


class StaticLocationProvider:
    def __init__(self, coordinate: Coordinate):
        self.coordinate = coordinate

    async def current_location(self) -> Optional[LocationSample]:
        return LocationSample(self.coordinate.latitude, self.coordinate.longitude, _now_ms())


class PushedLocationProvider:
    """Holds the latest fix posted by the client device."""

    def __init__(self, permission_granted: bool = True):
        self.permission_granted = permission_granted
        self._latest: Optional[LocationSample] = None

    def push(self, sample: LocationSample) -> None:
        self._latest = sample

    @property
    def latest(self) -> Optional[LocationSample]:
        return self._latest

    async def current_location(self) -> Optional[LocationSample]:
        if not self.permission_granted:
            raise LocationUnavailable("location permission denied")
        return self._latest


def build_simulated_path(
    stops: Sequence[LocatedEntity],
    points_per_segment: int = 5,
) -> List[Coordinate]:
    """Straight-line path through the stops with evenly spaced points.

    Each inter-stop segment contributes ``points_per_segment`` points starting
    at its first stop; the final stop closes the path.
    """
    if not stops:
        return []
    if points_per_segment < 1:
        raise ValueError("points_per_segment must be at least 1")
    path: List[Coordinate] = []
    for start, end in zip(stops[:-1], stops[1:]):
        for step in range(points_per_segment):
            fraction = step / points_per_segment
            path.append(
                Coordinate(
                    start.latitude + fraction * (end.latitude - start.latitude),
                    start.longitude + fraction * (end.longitude - start.longitude),
                )
            )
    path.append(stops[-1].coordinates)
    return path


class SimulatedRouteProvider:
    """Test-mode provider that walks a predefined path one point per poll."""

    def __init__(self, path: Sequence[Coordinate], clock: Optional[Callable[[], int]] = None):
        if not path:
            raise ValueError("simulated path is empty")
        self.path = list(path)
        self.position = -1
        self._clock = clock or _now_ms

    @property
    def finished(self) -> bool:
        return self.position >= len(self.path) - 1

    def set_position(self, index: int) -> bool:
        if 0 <= index < len(self.path):
            self.position = index
            return True
        return False

    async def current_location(self) -> Optional[LocationSample]:
        if not self.finished:
            self.position += 1
        point = self.path[self.position]
        return LocationSample(point.latitude, point.longitude, self._clock())


SampleCallback = Callable[[LocationSample], None]


class LocationSubscription:
    """Handle for an active ``watch_location`` loop."""

    def __init__(self, provider: LocationProvider, callback: SampleCallback, interval_s: float):
        self.provider = provider
        self.interval_s = interval_s
        self.using_fallback = False
        self.delivered = 0
        self._callback = callback
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, sample: LocationSample) -> None:
        if self._closed:
            return
        self.delivered += 1
        try:
            self._callback(sample)
        except Exception as exc:
            print(f"[location] subscriber failed: {exc}")

    async def poll_once(self) -> None:
        try:
            sample = await self.provider.current_location()
        except LocationUnavailable as exc:
            if not self.using_fallback:
                print(f"[location] {exc}; using fallback coordinate")
            self.using_fallback = True
            sample = fallback_sample()
        else:
            if self.using_fallback and sample is not None:
                print("[location] provider recovered")
            self.using_fallback = False
        if sample is not None:
            self._deliver(sample)

    async def _run(self) -> None:
        while not self._closed:
            await self.poll_once()
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        # Mark closed first so an in-flight poll cannot deliver afterwards.
        self._closed = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@asynccontextmanager
async def watch_location(
    provider: LocationProvider,
    callback: SampleCallback,
    interval_s: float = DEFAULT_INTERVAL_S,
) -> AsyncIterator[LocationSubscription]:
    """Poll ``provider`` every ``interval_s`` seconds until the block exits."""
    subscription = LocationSubscription(provider, callback, interval_s)
    subscription.start()
    try:
        yield subscription
    finally:
        await subscription.close()


__all__ = [
    "FALLBACK_COORDINATE",
    "LocationProvider",
    "LocationSubscription",
    "LocationUnavailable",
    "PushedLocationProvider",
    "SimulatedRouteProvider",
    "StaticLocationProvider",
    "build_simulated_path",
    "fallback_sample",
    "watch_location",
]
