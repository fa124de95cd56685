"""
Viewer-side live location map.

Admin and passenger screens keep one map of drivers, seeded by a periodic
pull of ``GET /api/locations`` and patched in between by pushed events.

Reconciliation rules:
- ``locationUpdate`` upserts the driver's entry
- ``transmissionStatusUpdate`` patches the flag on an existing entry only
- ``transmissionStopped`` removes the entry outright
- each pull is the source of truth for which drivers exist; anything the
  pull does not list is dropped unless a push touched it after the pull
  was requested, and a driver stopped after the request is not brought
  back by that pull
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from live_broadcaster import (
    EVENT_LOCATION_UPDATE,
    EVENT_TRANSMISSION_STATUS_UPDATE,
    EVENT_TRANSMISSION_STOPPED,
)

DEFAULT_POLL_INTERVAL_S = 5.0


class LiveLocationView:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._pushed_at: Dict[str, float] = {}
        self._stopped_at: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, driver_id: object) -> bool:
        return driver_id in self._entries

    def get(self, driver_id: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(driver_id)
        return dict(entry) if entry is not None else None

    def entries(self) -> Dict[str, Dict[str, Any]]:
        return {driver_id: dict(entry) for driver_id, entry in self._entries.items()}

    def apply_event(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        data = message.get("data") or {}
        driver_id = data.get("driver_id")
        if not driver_id:
            return
        now = self.clock()
        if kind == EVENT_LOCATION_UPDATE:
            self._entries[driver_id] = {
                "driver_id": driver_id,
                "latitude": data.get("latitude"),
                "longitude": data.get("longitude"),
                "is_transmitting": bool(data.get("is_transmitting", True)),
                "timestamp": data.get("timestamp"),
            }
            self._pushed_at[driver_id] = now
            self._stopped_at.pop(driver_id, None)
        elif kind == EVENT_TRANSMISSION_STATUS_UPDATE:
            entry = self._entries.get(driver_id)
            if entry is not None:
                entry["is_transmitting"] = bool(data.get("is_transmitting"))
                self._pushed_at[driver_id] = now
        elif kind == EVENT_TRANSMISSION_STOPPED:
            self._entries.pop(driver_id, None)
            self._pushed_at.pop(driver_id, None)
            self._stopped_at[driver_id] = now

    def apply_snapshot(self, records: Iterable[Dict[str, Any]], requested_at: float) -> None:
        """Resync against a pulled list of transmitting locations.

        ``requested_at`` is the clock reading taken just before the pull was
        issued; pushes newer than that win over the pulled data.
        """
        pulled: Dict[str, Dict[str, Any]] = {}
        for record in records:
            driver_id = record.get("driver_id")
            if driver_id:
                pulled[driver_id] = dict(record)

        merged: Dict[str, Dict[str, Any]] = {}
        for driver_id, record in pulled.items():
            if self._stopped_at.get(driver_id, float("-inf")) > requested_at:
                continue
            if self._pushed_at.get(driver_id, float("-inf")) > requested_at and driver_id in self._entries:
                merged[driver_id] = self._entries[driver_id]
            else:
                merged[driver_id] = record
        for driver_id, entry in self._entries.items():
            if driver_id in merged:
                continue
            if self._pushed_at.get(driver_id, float("-inf")) > requested_at:
                merged[driver_id] = entry

        self._entries = merged
        self._pushed_at = {d: t for d, t in self._pushed_at.items() if d in merged}
        # Tombstones only matter for pulls already in flight
        self._stopped_at = {d: t for d, t in self._stopped_at.items() if t > requested_at}

    def markers(self) -> List[Dict[str, Any]]:
        """Transmitting drivers as numeric points for the map widget."""
        points: List[Dict[str, Any]] = []
        for driver_id, entry in self._entries.items():
            if not entry.get("is_transmitting"):
                continue
            try:
                lat = float(entry["latitude"])
                lng = float(entry["longitude"])
            except (KeyError, TypeError, ValueError):
                continue
            points.append({"driver_id": driver_id, "lat": lat, "lng": lng})
        return points


class LiveViewClient:
    """Keeps a LiveLocationView in sync with the service over HTTP."""

    def __init__(
        self,
        base_url: str,
        view: Optional[LiveLocationView] = None,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ) -> None:
        self.view = view or LiveLocationView()
        self.poll_interval_s = poll_interval_s
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=10.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def poll_once(self) -> int:
        client = await self._ensure_client()
        requested_at = self.view.clock()
        response = await client.get(f"{self._base_url}/api/locations")
        response.raise_for_status()
        payload = response.json()
        records = payload.get("locations", []) if isinstance(payload, dict) else []
        self.view.apply_snapshot(records, requested_at)
        return len(self.view)

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except httpx.HTTPError as exc:
                print(f"[live_view] poll failed: {exc}")
            await asyncio.sleep(self.poll_interval_s)

    async def consume_stream(self) -> None:
        """Apply pushed events from the SSE stream until it closes."""
        client = await self._ensure_client()
        async with client.stream("GET", f"{self._base_url}/v1/stream/locations", timeout=None) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                try:
                    message = json.loads(line[len("data:"):].strip())
                except json.JSONDecodeError as exc:
                    print(f"[live_view] invalid stream frame: {exc}")
                    continue
                if message.get("type") == "snapshot":
                    self.view.apply_snapshot(message.get("locations", []), self.view.clock())
                else:
                    self.view.apply_event(message)


__all__ = ["LiveLocationView", "LiveViewClient", "DEFAULT_POLL_INTERVAL_S"]
