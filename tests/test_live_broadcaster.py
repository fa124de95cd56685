import asyncio
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from live_broadcaster import (  # noqa: E402
    LiveBroadcaster,
    LocationUpdate,
    TransmissionStatusUpdate,
    TransmissionStopped,
    encode_sse,
)
from location_ledger import LocationRecord  # noqa: E402


def _location(driver_id="D", lat="10.5"):
    return LocationUpdate(
        driver_id=driver_id,
        latitude=lat,
        longitude="-74.2",
        is_transmitting=True,
        timestamp="2025-05-01T16:00:00+00:00",
    )


def _drain(sub):
    items = []
    while not sub.queue.empty():
        items.append(json.loads(sub.queue.get_nowait()))
    return items


def test_event_wire_format():
    assert _location().to_dict() == {
        "type": "locationUpdate",
        "data": {
            "driver_id": "D",
            "latitude": "10.5",
            "longitude": "-74.2",
            "is_transmitting": True,
            "timestamp": "2025-05-01T16:00:00+00:00",
        },
    }
    assert TransmissionStatusUpdate(driver_id="D", is_transmitting=False).to_dict() == {
        "type": "transmissionStatusUpdate",
        "data": {"driver_id": "D", "is_transmitting": False},
    }
    assert TransmissionStopped(driver_id="D").to_dict() == {
        "type": "transmissionStopped",
        "data": {"driver_id": "D"},
    }


def test_encode_sse_frame():
    frame = encode_sse(TransmissionStopped(driver_id="D"))
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):])["type"] == "transmissionStopped"


def test_location_update_from_record():
    record = LocationRecord("D", "1.5", "2.5", True, "2025-05-01T16:00:00+00:00")
    event = LocationUpdate.from_record(record)
    assert event.to_dict()["data"]["latitude"] == "1.5"


def test_broadcast_reaches_every_subscriber():
    broadcaster = LiveBroadcaster()
    subs = [broadcaster.subscribe("ws") for _ in range(3)]
    assert broadcaster.broadcast(_location()) == 3
    for sub in subs:
        assert [m["type"] for m in _drain(sub)] == ["locationUpdate"]


def test_broadcast_skips_originator():
    broadcaster = LiveBroadcaster()
    origin = broadcaster.subscribe("ws")
    other = broadcaster.subscribe("sse")
    assert broadcaster.broadcast(_location(), exclude=origin.connection_id) == 1
    assert _drain(origin) == []
    assert len(_drain(other)) == 1


def test_broadcast_without_subscribers():
    assert LiveBroadcaster().broadcast(_location()) == 0


def test_unsubscribe_removes_connection():
    broadcaster = LiveBroadcaster()
    sub = broadcaster.subscribe("ws")
    assert broadcaster.connection_count() == 1
    broadcaster.unsubscribe(sub)
    broadcaster.unsubscribe(sub)
    assert broadcaster.connection_count() == 0
    assert broadcaster.broadcast(_location()) == 0


def test_full_queue_drops_event_for_that_subscriber_only():
    broadcaster = LiveBroadcaster(queue_size=1)
    slow = broadcaster.subscribe("ws")
    fast = broadcaster.subscribe("ws")
    broadcaster.broadcast(_location(lat="1"))
    _drain(fast)
    assert broadcaster.broadcast(_location(lat="2")) == 1
    assert [m["data"]["latitude"] for m in _drain(slow)] == ["1"]
    assert [m["data"]["latitude"] for m in _drain(fast)] == ["2"]


def test_per_connection_order_is_fifo():
    broadcaster = LiveBroadcaster()
    sub = broadcaster.subscribe("ws")
    broadcaster.broadcast(_location(lat="1"))
    broadcaster.broadcast(TransmissionStatusUpdate(driver_id="D", is_transmitting=False))
    broadcaster.broadcast(TransmissionStopped(driver_id="D"))
    assert [m["type"] for m in _drain(sub)] == [
        "locationUpdate",
        "transmissionStatusUpdate",
        "transmissionStopped",
    ]


def test_waiting_subscriber_is_woken():
    broadcaster = LiveBroadcaster()

    async def scenario():
        sub = broadcaster.subscribe("sse")
        waiter = asyncio.create_task(sub.queue.get())
        await asyncio.sleep(0)
        broadcaster.broadcast(TransmissionStopped(driver_id="D"))
        return json.loads(await asyncio.wait_for(waiter, timeout=1))

    assert asyncio.run(scenario())["data"]["driver_id"] == "D"
