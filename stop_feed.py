"""Async client for the upstream route-stops feed.

Fetches the ordered stop list of one route in a single request. Paging and
response caching are the upstream proxy's job and are not handled here.
"""
from __future__ import annotations

import os
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from stops import LocatedEntity, RouteMeta, StopKind, parse_stop


STOP_FEED_BASE = os.getenv("STOP_FEED_BASE", "")
STOP_FEED_KEY = os.getenv("STOP_FEED_KEY", "")
STOP_FEED_TIMEOUT_S = float(os.getenv("STOP_FEED_TIMEOUT_S", "10"))

StopLookup = Callable[[str], Optional[LocatedEntity]]


class StopFeedError(RuntimeError):
    """Upstream feed failed or returned something unusable."""


def _records(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return [r for r in payload if isinstance(r, dict)]
    if isinstance(payload, dict):
        for key in ("value", "stops", "Stops", "data"):
            rows = payload.get(key)
            if isinstance(rows, list):
                return [r for r in rows if isinstance(r, dict)]
    raise StopFeedError("unexpected route stops payload")


def route_stops_from_records(
    records: Sequence[Dict[str, Any]],
    kind: StopKind,
    lookup: Optional[StopLookup] = None,
) -> List[LocatedEntity]:
    """Turn feed rows into stops, joining coordinates from ``lookup`` when absent.

    Route rows often carry only the stop code plus sequence/direction; the
    name and coordinates then come from the full stop list.
    """
    resolved: List[LocatedEntity] = []
    missing = 0
    for raw in records:
        stop = parse_stop(raw, kind)
        if stop is None and lookup is not None:
            stop_id = raw.get("id") or raw.get("BusStopCode") or raw.get("StationCode")
            known = lookup(str(stop_id).strip()) if stop_id is not None else None
            if known is not None:
                meta = _route_meta(raw)
                stop = replace(known, route_meta=meta) if meta else known
        if stop is None:
            missing += 1
            continue
        resolved.append(stop)
    if missing:
        print(f"[stop_feed] {missing} route rows could not be resolved to a located stop")
    return resolved


def _route_meta(raw: Dict[str, Any]) -> Optional[RouteMeta]:
    try:
        sequence = int(raw.get("sequence", raw.get("StopSequence")))
    except (TypeError, ValueError):
        return None
    try:
        direction = int(raw.get("direction", raw.get("Direction", 1)))
    except (TypeError, ValueError):
        direction = 1
    return RouteMeta(sequence=sequence, direction=direction)


def available_directions(stops: Sequence[LocatedEntity]) -> List[int]:
    return sorted({stop.route_meta.direction if stop.route_meta else 1 for stop in stops})


def select_direction(
    stops: Sequence[LocatedEntity],
    direction: Optional[int] = None,
    start_stop_id: Optional[str] = None,
) -> Tuple[Optional[int], List[LocatedEntity]]:
    """Pick one direction of a route and return its stops in sequence order.

    A start stop, when given, wins: the direction that serves it is chosen.
    Otherwise the requested direction is used if the route has it, else the
    first available one.
    """
    directions = available_directions(stops)
    if not directions:
        return None, []

    chosen = direction if direction in directions else None
    if start_stop_id is not None:
        for candidate in directions:
            if any(
                s.id == start_stop_id and (s.route_meta.direction if s.route_meta else 1) == candidate
                for s in stops
            ):
                chosen = candidate
                break
    if chosen is None:
        chosen = directions[0]

    picked = [s for s in stops if (s.route_meta.direction if s.route_meta else 1) == chosen]
    # Stable sort keeps feed order for stops without a sequence number.
    picked.sort(key=lambda s: s.route_meta.sequence if s.route_meta else 0)
    return chosen, picked


class StopFeedClient:
    """Minimal client for ``GET {base}/routes/{route}/stops``."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout_s: float = STOP_FEED_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> Optional["StopFeedClient"]:
        base = STOP_FEED_BASE.strip()
        if not base:
            return None
        return cls(base, STOP_FEED_KEY.strip())

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["AccountKey"] = self._api_key
            self._client = httpx.AsyncClient(
                timeout=self._timeout_s,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_route_stops(
        self,
        route: str,
        kind: StopKind = StopKind.BUS,
        lookup: Optional[StopLookup] = None,
    ) -> List[LocatedEntity]:
        client = await self._ensure_client()
        url = f"{self._base_url}/routes/{route}/stops"
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as exc:
            raise StopFeedError(f"route stops request failed for {route}: {exc}") from exc
        except ValueError as exc:
            raise StopFeedError(f"route stops response for {route} is not JSON") from exc
        stops = route_stops_from_records(_records(payload), kind, lookup)
        print(f"[stop_feed] route {route}: {len(stops)} stops")
        return stops


__all__ = [
    "StopFeedClient",
    "StopFeedError",
    "available_directions",
    "route_stops_from_records",
    "select_direction",
]
