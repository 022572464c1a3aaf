"""Delivery of the wake-up alarm and the "almost there" heads-up.

The tracker only emits events; notifiers decide how they reach the rider.
Delivery failures are logged and never propagate back into tracking.
"""
from __future__ import annotations

import asyncio
import functools
import json
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from pywebpush import WebPushException, webpush

from journey_tracker import ApproachingEvent, ArrivalEvent
from alarm_devices import AlarmDeviceRegistry


class ArrivalNotifier(Protocol):
    def notify_arrival(self, event: ArrivalEvent) -> None:
        ...

    def notify_approaching(self, event: ApproachingEvent) -> None:
        ...


def arrival_payload(event: ArrivalEvent) -> Dict[str, Any]:
    return {
        "title": "Wake Up, Friend!",
        "body": f"Next stop: {event.stop_name}! Time to get ready!",
        "tag": f"arrival-{event.stop_id}",
        "url": "/alarm",
        "data": {"type": "arrival", "stopId": event.stop_id, "stopName": event.stop_name},
    }


def approaching_payload(event: ApproachingEvent) -> Dict[str, Any]:
    stops = "stop" if event.stops_remaining == 1 else "stops"
    return {
        "title": "Almost There!",
        "body": f"{event.stop_name} is coming up in {event.stops_remaining} {stops}!",
        "tag": f"approaching-{event.stop_id}",
        "url": "/journey",
        "data": {"type": "approaching", "stopId": event.stop_id, "stopName": event.stop_name},
    }


class RecordingNotifier:
    """Keeps events in memory; used when push is not configured and in tests."""

    def __init__(self) -> None:
        self.arrivals: List[ArrivalEvent] = []
        self.approaching: List[ApproachingEvent] = []

    def notify_arrival(self, event: ArrivalEvent) -> None:
        self.arrivals.append(event)

    def notify_approaching(self, event: ApproachingEvent) -> None:
        self.approaching.append(event)


class WebPushArrivalNotifier:
    """Sends alarm pushes via pywebpush to the devices that want this stop."""

    def __init__(
        self,
        devices: AlarmDeviceRegistry,
        *,
        vapid_private_key: str,
        vapid_subject: str,
        sender: Optional[Callable[..., Any]] = None,
    ):
        self.devices = devices
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self._sender = sender or webpush
        self._pending: Set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return bool(self.vapid_private_key)

    def notify_arrival(self, event: ArrivalEvent) -> None:
        self._dispatch(arrival_payload(event))

    def notify_approaching(self, event: ApproachingEvent) -> None:
        self._dispatch(approaching_payload(event))

    def _dispatch(self, payload: Dict[str, Any]) -> None:
        if not self.configured:
            print("[push] VAPID keys not configured, skipping notification")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self.send(payload))
            return
        task = loop.create_task(self.send(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight sends (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def send(self, payload: Dict[str, Any]) -> int:
        """Deliver ``payload`` to every device pinned to (or open to) its stop."""
        stop_id = payload["data"]["stopId"]
        kind = payload["data"]["type"]
        recipients = await self.devices.recipients(stop_id)
        if not recipients:
            print(f"[push] no devices waiting on {kind} for stop {stop_id}")
            return 0

        loop = asyncio.get_running_loop()
        data = json.dumps(payload)
        delivered: List[str] = []
        for device in recipients:
            try:
                await loop.run_in_executor(
                    None,
                    functools.partial(
                        self._sender,
                        subscription_info=device.webpush_target(),
                        data=data,
                        vapid_private_key=self.vapid_private_key,
                        vapid_claims={"sub": self.vapid_subject},
                    ),
                )
                delivered.append(device.endpoint)
            except WebPushException as exc:
                response = getattr(exc, "response", None)
                if response is not None and response.status_code in (404, 410):
                    print("[push] device endpoint gone; forgetting it")
                    await self.devices.forget(device.endpoint)
                else:
                    print(f"[push] WebPushException: {exc}")
            except Exception as exc:
                print(f"[push] push error: {exc}")

        await self.devices.record_alarm(delivered, stop_id, kind)
        print(f"[push] {kind} for stop {stop_id} sent to {len(delivered)}/{len(recipients)} devices")
        return len(delivered)


__all__ = [
    "ArrivalNotifier",
    "RecordingNotifier",
    "WebPushArrivalNotifier",
    "approaching_payload",
    "arrival_payload",
]
