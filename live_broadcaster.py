"""
Live Update Broadcaster

Fan-out of location and transmission-state events to connected viewers.

Each connection (WebSocket or SSE) owns a bounded queue registered here on
connect and removed on disconnect. ``broadcast`` encodes the event once and
drops it for any subscriber whose queue is full: delivery is at-most-once,
FIFO per connection, with no persistence. Viewers recover anything they
missed from the next periodic pull of the location ledger.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_QUEUE_SIZE = 100

EVENT_LOCATION_UPDATE = "locationUpdate"
EVENT_TRANSMISSION_STATUS_UPDATE = "transmissionStatusUpdate"
EVENT_TRANSMISSION_STOPPED = "transmissionStopped"


@dataclass
class LocationUpdate:
    driver_id: str
    latitude: str
    longitude: str
    is_transmitting: bool
    timestamp: str
    type: str = field(default=EVENT_LOCATION_UPDATE, init=False)

    @classmethod
    def from_record(cls, record: Any) -> "LocationUpdate":
        return cls(
            driver_id=record.driver_id,
            latitude=record.latitude,
            longitude=record.longitude,
            is_transmitting=record.is_transmitting,
            timestamp=record.timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": {
                "driver_id": self.driver_id,
                "latitude": self.latitude,
                "longitude": self.longitude,
                "is_transmitting": self.is_transmitting,
                "timestamp": self.timestamp,
            },
        }


@dataclass
class TransmissionStatusUpdate:
    driver_id: str
    is_transmitting: bool
    type: str = field(default=EVENT_TRANSMISSION_STATUS_UPDATE, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": {"driver_id": self.driver_id, "is_transmitting": self.is_transmitting},
        }


@dataclass
class TransmissionStopped:
    """Viewers must drop the driver, not just flip a flag."""
    driver_id: str
    type: str = field(default=EVENT_TRANSMISSION_STOPPED, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": {"driver_id": self.driver_id}}


def encode_event(event: Any) -> str:
    return json.dumps(event.to_dict())


def encode_sse(event: Any) -> str:
    return f"data: {encode_event(event)}\n\n"


@dataclass
class Subscription:
    connection_id: str
    kind: str  # "ws" | "sse"
    queue: asyncio.Queue


class LiveBroadcaster:
    """Registry of live viewer connections.

    Created per application instance; nothing here is module-level state.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subs: Dict[str, Subscription] = {}

    def subscribe(self, kind: str) -> Subscription:
        sub = Subscription(
            connection_id=uuid.uuid4().hex[:8],
            kind=kind,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._subs[sub.connection_id] = sub
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subs.pop(sub.connection_id, None)

    def connection_count(self) -> int:
        return len(self._subs)

    def connection_ids(self) -> List[str]:
        return list(self._subs)

    def broadcast(self, event: Any, exclude: Optional[str] = None) -> int:
        """Queue ``event`` for every subscriber except ``exclude``.

        Returns the number of subscribers the event was queued for.
        """
        if not self._subs:
            return 0
        encoded = encode_event(event)
        delivered = 0
        for sub in list(self._subs.values()):
            if sub.connection_id == exclude:
                continue
            try:
                sub.queue.put_nowait(encoded)
            except asyncio.QueueFull:
                print(
                    f"[broadcast] dropped {event.type} for slow {sub.kind} "
                    f"subscriber {sub.connection_id}"
                )
                continue
            delivered += 1
        return delivered


__all__ = [
    "DEFAULT_QUEUE_SIZE",
    "EVENT_LOCATION_UPDATE",
    "EVENT_TRANSMISSION_STATUS_UPDATE",
    "EVENT_TRANSMISSION_STOPPED",
    "LocationUpdate",
    "TransmissionStatusUpdate",
    "TransmissionStopped",
    "Subscription",
    "LiveBroadcaster",
    "encode_event",
    "encode_sse",
]
