"""
Driver-side location transmitter.

A new device sample is sent twice, as two independent sends:
1. durable path: ``POST /api/locations`` (ledger upsert, then fan-out)
2. push path: a ``locationUpdate`` message over the live connection

Losing the push never loses durability and vice versa. Samples go out on a
fixed cadence, or sooner when the device moved more than the movement
threshold since the last sample that was sent.
"""

from __future__ import annotations

import asyncio
import math
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import httpx

DEFAULT_SAMPLE_INTERVAL_S = 15.0
DEFAULT_MIN_MOVE_M = 10.0
R_EARTH = 6371000.0

PushSender = Callable[[Dict[str, Any]], Awaitable[None]]


def to_rad(deg: float) -> float:
    return deg * math.pi / 180.0


def haversine(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lon1 = a; lat2, lon2 = b
    dlat = to_rad(lat2-lat1); dlon = to_rad(lon2-lon1)
    s = math.sin(dlat/2)**2 + math.cos(to_rad(lat1))*math.cos(to_rad(lat2))*math.sin(dlon/2)**2
    return 2 * R_EARTH * math.asin(math.sqrt(s))


class DriverTransmitter:
    def __init__(
        self,
        base_url: str,
        driver_id: str,
        push: Optional[PushSender] = None,
        client: Optional[httpx.AsyncClient] = None,
        sample_interval_s: float = DEFAULT_SAMPLE_INTERVAL_S,
        min_move_m: float = DEFAULT_MIN_MOVE_M,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver_id = driver_id
        self.sample_interval_s = sample_interval_s
        self.min_move_m = min_move_m
        self.is_transmitting = False
        self._base_url = base_url.rstrip("/")
        self._push = push
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._last_sent: Optional[Tuple[float, float, float]] = None  # (ts, lat, lon)
        self._beacons: Set[asyncio.Task] = set()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def aclose(self) -> None:
        if self._beacons:
            await asyncio.gather(*self._beacons, return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def should_send(self, lat: float, lon: float, now: Optional[float] = None) -> bool:
        if now is None:
            now = self._clock()
        if self._last_sent is None:
            return True
        last_ts, last_lat, last_lon = self._last_sent
        if now - last_ts >= self.sample_interval_s:
            return True
        return haversine((last_lat, last_lon), (lat, lon)) > self.min_move_m

    async def _send_push(self, message: Dict[str, Any]) -> bool:
        if self._push is None:
            return False
        try:
            await self._push(message)
        except Exception as exc:
            print(f"[driver] push send failed for {self.driver_id}: {exc}")
            return False
        return True

    async def _post_location(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        client = await self._ensure_client()
        try:
            response = await client.post(f"{self._base_url}/api/locations", json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            print(f"[driver] location post failed for {self.driver_id}: {exc}")
            return None
        return response.json().get("location")

    async def submit_sample(self, lat: float, lon: float) -> Optional[Dict[str, Any]]:
        """Send one sample over both paths; returns the stored record, if any."""
        if not self.is_transmitting:
            return None
        self._last_sent = (self._clock(), lat, lon)
        body = {
            "driver_id": self.driver_id,
            "latitude": str(lat),
            "longitude": str(lon),
            "is_transmitting": True,
        }
        push_message = {
            "type": "locationUpdate",
            "location": {**body, "timestamp": datetime.now(timezone.utc).isoformat()},
        }
        record, _pushed = await asyncio.gather(
            self._post_location(body),
            self._send_push(push_message),
        )
        return record

    async def offer_sample(self, lat: float, lon: float) -> Optional[Dict[str, Any]]:
        """Submit the sample only if the cadence or movement rule allows it."""
        if not self.is_transmitting or not self.should_send(lat, lon):
            return None
        return await self.submit_sample(lat, lon)

    async def start(self) -> None:
        self.is_transmitting = True
        self._last_sent = None
        await self._send_push(
            {"type": "transmissionStatus", "driver_id": self.driver_id, "is_transmitting": True}
        )

    async def stop(self) -> bool:
        """Stop transmitting and wait for the server to confirm."""
        self.is_transmitting = False
        await self._send_push(
            {"type": "transmissionStatus", "driver_id": self.driver_id, "is_transmitting": False}
        )
        client = await self._ensure_client()
        try:
            response = await client.post(
                f"{self._base_url}/api/locations/stop-transmission",
                json={"driver_id": self.driver_id},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            print(f"[driver] stop-transmission failed for {self.driver_id}: {exc}")
            return False
        return True

    def send_stop_beacon(self) -> Optional[asyncio.Task]:
        """Fire-and-forget stop request for teardown; the caller must not await it."""
        if not self.is_transmitting:
            return None
        self.is_transmitting = False

        async def _beacon() -> None:
            client = await self._ensure_client()
            await client.post(
                f"{self._base_url}/api/locations/stop-transmission",
                json={"driver_id": self.driver_id},
            )

        def _done(task: asyncio.Task) -> None:
            self._beacons.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                print(f"[driver] stop beacon not delivered for {self.driver_id}: {exc}")

        task = asyncio.get_running_loop().create_task(_beacon())
        self._beacons.add(task)
        task.add_done_callback(_done)
        return task


__all__ = ["DriverTransmitter", "haversine", "DEFAULT_SAMPLE_INTERVAL_S", "DEFAULT_MIN_MOVE_M"]
