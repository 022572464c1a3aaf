from __future__ import annotations

import asyncio
import os
from contextlib import AsyncExitStack
from typing import Optional

from journey_tracker import JourneyTracker, TrackingState
from location_source import (
    DEFAULT_INTERVAL_S,
    LocationProvider,
    LocationSubscription,
    watch_location,
)
from stops import LocationSample


DEFAULT_TICK_S = float(os.getenv("TRACKER_TICK_S", "10"))


class JourneySession:
    """
    Runs a tracker against a location subscription and a periodic tick.

    Both event sources run on the caller's event loop, so tracker state is
    never touched concurrently. ``stop`` (or leaving the ``async with`` block)
    cancels the tick and releases the subscription; nothing reaches the
    tracker afterwards.
    """

    def __init__(
        self,
        tracker: JourneyTracker,
        provider: LocationProvider,
        *,
        location_interval_s: float = DEFAULT_INTERVAL_S,
        tick_interval_s: float = DEFAULT_TICK_S,
    ):
        self.tracker = tracker
        self.provider = provider
        self.location_interval_s = location_interval_s
        self.tick_interval_s = tick_interval_s
        self.subscription: Optional[LocationSubscription] = None
        self._stack: Optional[AsyncExitStack] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._last_delivered: Optional[LocationSample] = None
        self._stopped = False

    @property
    def active(self) -> bool:
        return self._stack is not None and not self._stopped

    @property
    def using_fallback(self) -> bool:
        return bool(self.subscription and self.subscription.using_fallback)

    async def start(self) -> None:
        if self._stack is not None or self._stopped:
            raise RuntimeError("journey session already started")
        stack = AsyncExitStack()
        try:
            self.subscription = await stack.enter_async_context(
                watch_location(self.provider, self._on_sample, self.location_interval_s)
            )
            self._tick_task = asyncio.create_task(self._tick_loop())
            stack.push_async_callback(self._cancel_tick)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        print(
            f"[journey] session started location_interval={self.location_interval_s}s "
            f"tick={self.tick_interval_s}s"
        )

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        stack, self._stack = self._stack, None
        if stack is not None:
            await stack.aclose()
        print("[journey] session stopped")

    async def __aenter__(self) -> "JourneySession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def deliver(self, sample: LocationSample, partial_progress: Optional[float] = None) -> TrackingState:
        """Feed a sample directly (e.g. one posted by the client)."""
        if self._stopped:
            raise RuntimeError("journey session has ended")
        self._last_delivered = sample
        return self.tracker.on_location(sample, partial_progress)

    def _on_sample(self, sample: LocationSample) -> None:
        if self._stopped or sample == self._last_delivered:
            return
        self._last_delivered = sample
        self.tracker.on_location(sample)

    async def _tick_loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.tick_interval_s)
            if self._stopped:
                break
            try:
                self.tracker.on_tick()
            except Exception as exc:
                print(f"[journey] tick failed: {exc}")

    async def _cancel_tick(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["DEFAULT_TICK_S", "JourneySession"]
