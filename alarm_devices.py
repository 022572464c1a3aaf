"""Devices registered for the wake-up alarm.

A device may pin itself to one destination stop and then only hears about
journeys ending there; an unpinned device hears every alarm. Each device
remembers the last alarm it was sent (stop, kind, time), which is what the
notifier writes back after a delivery.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class AlarmDevice:
    endpoint: str
    p256dh: str
    auth: str
    registered_at: str
    user_agent: Optional[str] = None
    destination_stop_id: Optional[str] = None
    last_alarm_stop_id: Optional[str] = None
    last_alarm_kind: Optional[str] = None
    last_alarm_at: Optional[str] = None

    def wants(self, stop_id: str) -> bool:
        return self.destination_stop_id is None or self.destination_stop_id == stop_id

    def webpush_target(self) -> Dict[str, Any]:
        """``subscription_info`` argument for ``pywebpush.webpush``."""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

    @classmethod
    def from_record(cls, record: Any) -> Optional["AlarmDevice"]:
        if not isinstance(record, dict):
            return None
        if not (record.get("endpoint") and record.get("p256dh") and record.get("auth")):
            return None
        known = {name: record.get(name) for name in cls.__dataclass_fields__}
        known["registered_at"] = known["registered_at"] or _utc_stamp()
        return cls(**known)


class AlarmDeviceRegistry:
    """Registered devices, keyed by push endpoint, mirrored to a JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._devices: Dict[str, AlarmDevice] = {}
        for device in self._read():
            self._devices[device.endpoint] = device

    def _read(self) -> List[AlarmDevice]:
        try:
            raw = json.loads(self.path.read_text())
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            print(f"[push] WARNING: ignoring unreadable device file {self.path}: {exc}")
            return []
        records = raw.get("devices", []) if isinstance(raw, dict) else []
        devices = [AlarmDevice.from_record(record) for record in records]
        return [device for device in devices if device is not None]

    def _write(self) -> None:
        body = json.dumps(
            {"devices": [asdict(d) for d in self._devices.values()], "written_at": _utc_stamp()},
            indent=2,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(self.path.name + ".tmp")
        staging.write_text(body)
        staging.replace(self.path)

    async def register(
        self,
        endpoint: str,
        keys: Dict[str, str],
        *,
        user_agent: Optional[str] = None,
        destination_stop_id: Optional[str] = None,
    ) -> bool:
        """Add a device or refresh its keys and pin. Returns True if it was new.

        Re-registering keeps the device's alarm history.
        """
        p256dh = keys.get("p256dh") if isinstance(keys, dict) else None
        auth = keys.get("auth") if isinstance(keys, dict) else None
        if not endpoint or not p256dh or not auth:
            raise ValueError("push registration needs an endpoint and p256dh/auth keys")

        async with self._lock:
            previous = self._devices.get(endpoint)
            device = AlarmDevice(
                endpoint=endpoint,
                p256dh=p256dh,
                auth=auth,
                registered_at=previous.registered_at if previous else _utc_stamp(),
                user_agent=user_agent,
                destination_stop_id=destination_stop_id,
            )
            if previous is not None:
                device.last_alarm_stop_id = previous.last_alarm_stop_id
                device.last_alarm_kind = previous.last_alarm_kind
                device.last_alarm_at = previous.last_alarm_at
            self._devices[endpoint] = device
            self._write()
        pinned = f" for stop {destination_stop_id}" if destination_stop_id else ""
        print(f"[push] device {'registered' if previous is None else 'refreshed'}{pinned}")
        return previous is None

    async def forget(self, endpoint: str) -> bool:
        async with self._lock:
            if endpoint not in self._devices:
                return False
            del self._devices[endpoint]
            self._write()
            return True

    async def recipients(self, stop_id: str) -> List[AlarmDevice]:
        """Devices that should hear an alarm for ``stop_id``."""
        async with self._lock:
            return [device for device in self._devices.values() if device.wants(stop_id)]

    async def record_alarm(self, endpoints: Iterable[str], stop_id: str, kind: str) -> None:
        async with self._lock:
            stamp = _utc_stamp()
            touched = False
            for endpoint in endpoints:
                device = self._devices.get(endpoint)
                if device is None:
                    continue
                device.last_alarm_stop_id = stop_id
                device.last_alarm_kind = kind
                device.last_alarm_at = stamp
                touched = True
            if touched:
                self._write()

    async def get(self, endpoint: str) -> Optional[AlarmDevice]:
        async with self._lock:
            return self._devices.get(endpoint)

    async def summary(self) -> Dict[str, int]:
        async with self._lock:
            pinned = sum(1 for d in self._devices.values() if d.destination_stop_id)
            return {"devices": len(self._devices), "pinned": pinned}


__all__ = ["AlarmDevice", "AlarmDeviceRegistry"]
