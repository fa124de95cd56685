"""
Fleet Live Tracking Service — Driver Location API (FastAPI)

Purpose
=======
Resolve each driver's current and next shift on the operational wall clock,
keep one live position per driver, and fan location changes out to admin
and passenger screens as they happen.

Key features
------------
- Shift views for the driver dashboard and the public board (current/next,
  daily queue, time remaining in the current shift).
- Location ledger with latest-wins upserts and an explicit stop-transmission
  signal that works as a fire-and-forget beacon.
- WebSocket channel for drivers and viewers, plus a receive-only SSE stream.
- Route and assignment management backing the shift views.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo
import asyncio, json, os

from fastapi import APIRouter, Body, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from live_broadcaster import (
    DEFAULT_QUEUE_SIZE,
    LiveBroadcaster,
    LocationUpdate,
    Subscription,
    TransmissionStatusUpdate,
    TransmissionStopped,
)
from location_ledger import LocationLedger, parse_location_payload
from roster_store import RosterStore
from shift_resolver import (
    OPERATIONAL_TZ_NAME,
    ShiftTimeError,
    format_remaining,
    local_hhmm,
    remaining_time,
    resolve_shifts,
    shift_queue,
)

# ---------------------------
# Config
# ---------------------------
DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
LOCATIONS_FILE_NAME = "locations.json"
ROSTER_FILE_NAME = "roster.json"
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", str(DEFAULT_QUEUE_SIZE)))
SSE_KEEPALIVE_S = float(os.getenv("SSE_KEEPALIVE_S", "15"))

# 0 disables the sweeper: a transmitting flag only clears on an explicit stop
STALE_TRANSMIT_S = int(os.getenv("STALE_TRANSMIT_S", "0"))
STALE_SWEEP_INTERVAL_S = int(os.getenv("STALE_SWEEP_INTERVAL_S", "30"))


# ---------------------------
# State accessors
# ---------------------------
def _ledger(request: Request) -> LocationLedger:
    return request.app.state.ledger


def _roster(request: Request) -> RosterStore:
    return request.app.state.roster


def _broadcaster(request: Request) -> LiveBroadcaster:
    return request.app.state.broadcaster


def _now(app: FastAPI) -> datetime:
    return app.state.now_fn()


router = APIRouter()


# ---------------------------
# REST: Locations
# ---------------------------
@router.get("/api/locations")
async def list_transmitting_locations(request: Request):
    records = await _ledger(request).list_transmitting()
    return {"locations": [r.to_dict() for r in records]}


@router.get("/api/locations/all")
async def list_all_locations(request: Request):
    records = await _ledger(request).list_all()
    return {"locations": [r.to_dict() for r in records]}


@router.get("/api/locations/{driver_id}")
async def get_driver_location(request: Request, driver_id: str):
    record = await _ledger(request).get(driver_id)
    if record is None:
        raise HTTPException(status_code=404, detail="location not found")
    return {"location": record.to_dict()}


@router.post("/api/locations")
async def submit_location(request: Request, payload: Dict[str, Any] = Body(...)):
    try:
        sample = parse_location_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    record = await _ledger(request).upsert(**sample)
    _broadcaster(request).broadcast(LocationUpdate.from_record(record))
    return {"ok": True, "location": record.to_dict()}


@router.post("/api/locations/stop-transmission")
async def stop_transmission(request: Request):
    """Idempotent stop signal.

    Read from the raw body so page-teardown beacons are accepted whatever
    content type the browser attaches.
    """
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="invalid payload") from exc
    driver_id = payload.get("driver_id") if isinstance(payload, dict) else None
    if not isinstance(driver_id, str) or not driver_id.strip():
        raise HTTPException(status_code=400, detail="driver_id is required")
    driver_id = driver_id.strip()
    record = await _ledger(request).set_transmitting(driver_id, False)
    _broadcaster(request).broadcast(TransmissionStopped(driver_id=driver_id))
    print(f"[locations] transmission stopped for {driver_id}")
    return {"ok": True, "location": record.to_dict() if record else None}


# ---------------------------
# REST: Routes
# ---------------------------
@router.get("/api/routes")
async def list_routes(request: Request):
    routes = await _roster(request).list_routes()
    return {"routes": [r.to_dict() for r in routes]}


@router.get("/api/routes/{route_id}")
async def get_route(request: Request, route_id: str):
    route = await _roster(request).get_route(route_id)
    if route is None:
        raise HTTPException(status_code=404, detail="route not found")
    return {"route": route.to_dict()}


@router.post("/api/routes")
async def create_route(request: Request, payload: Dict[str, Any] = Body(...)):
    try:
        route = await _roster(request).create_route(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"route": route.to_dict()}


@router.put("/api/routes/{route_id}")
async def update_route(request: Request, route_id: str, payload: Dict[str, Any] = Body(...)):
    try:
        route = await _roster(request).update_route(route_id, payload)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="route not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"route": route.to_dict()}


@router.delete("/api/routes/{route_id}")
async def delete_route(request: Request, route_id: str):
    if not await _roster(request).delete_route(route_id):
        raise HTTPException(status_code=404, detail="route not found")
    return {"ok": True}


# ---------------------------
# REST: Assignments
# ---------------------------
@router.get("/api/assignments")
async def list_assignments(request: Request):
    assignments = await _roster(request).list_assignments()
    return {"assignments": [a.to_dict() for a in assignments]}


@router.get("/api/assignments/driver/{driver_id}")
async def list_driver_assignments(request: Request, driver_id: str, include_inactive: bool = False):
    assignments = await _roster(request).list_assignments_for_driver(
        driver_id, active_only=not include_inactive
    )
    return {"assignments": [a.to_dict() for a in assignments]}


@router.post("/api/assignments")
async def create_assignment(request: Request, payload: Dict[str, Any] = Body(...)):
    try:
        assignment = await _roster(request).create_assignment(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"assignment": assignment.to_dict()}


@router.patch("/api/assignments/{assignment_id}")
async def toggle_assignment(request: Request, assignment_id: str, payload: Dict[str, Any] = Body(...)):
    try:
        assignment = await _roster(request).set_assignment_active(
            assignment_id, payload.get("is_active")
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="assignment not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"assignment": assignment.to_dict()}


@router.delete("/api/assignments/{assignment_id}")
async def delete_assignment(request: Request, assignment_id: str):
    if not await _roster(request).delete_assignment(assignment_id):
        raise HTTPException(status_code=404, detail="assignment not found")
    return {"ok": True}


# ---------------------------
# REST: Shift views
# ---------------------------
async def _route_dict(roster: RosterStore, assignment: Any) -> Optional[Dict[str, Any]]:
    if assignment is None:
        return None
    route = await roster.get_route(assignment.route_id)
    return route.to_dict() if route else None


@router.get("/api/assignments/driver/{driver_id}/shifts")
async def driver_shifts(request: Request, driver_id: str):
    """
    Current and next shift for the driver dashboard.

    ``current`` and ``next`` both null means the driver has no active
    assignments; that is a normal result, not an error.
    """
    roster = _roster(request)
    tz: ZoneInfo = request.app.state.tz
    now = _now(request.app)
    assignments = await roster.list_assignments_for_driver(driver_id)
    try:
        resolution = resolve_shifts(driver_id, assignments, now=now, tz=tz)
        remaining = None
        if resolution.current is not None:
            remaining = format_remaining(remaining_time(resolution.current, now=now, tz=tz))
    except ShiftTimeError as exc:
        print(f"[shifts] resolve failed for {driver_id}: {exc}")
        raise HTTPException(status_code=500, detail=f"invalid shift data: {exc}") from exc
    body = resolution.to_dict()
    body.update(
        {
            "current_route": await _route_dict(roster, resolution.current),
            "next_route": await _route_dict(roster, resolution.next),
            "remaining": remaining,
            "local_time": local_hhmm(now, tz),
            "timezone": tz.key,
        }
    )
    return body


@router.get("/api/assignments/driver/{driver_id}/queue")
async def driver_shift_queue(request: Request, driver_id: str):
    tz: ZoneInfo = request.app.state.tz
    now = _now(request.app)
    assignments = await _roster(request).list_assignments_for_driver(driver_id)
    try:
        entries = shift_queue(driver_id, assignments, now=now, tz=tz)
    except ShiftTimeError as exc:
        print(f"[shifts] queue failed for {driver_id}: {exc}")
        raise HTTPException(status_code=500, detail=f"invalid shift data: {exc}") from exc
    return {
        "queue": [e.to_dict() for e in entries],
        "local_time": local_hhmm(now, tz),
        "timezone": tz.key,
    }


@router.get("/api/shifts/board")
async def shift_board(request: Request):
    """Public listing: every driver with active assignments and their live state."""
    roster = _roster(request)
    ledger = _ledger(request)
    tz: ZoneInfo = request.app.state.tz
    now = _now(request.app)

    by_driver: Dict[str, List[Any]] = {}
    for assignment in await roster.list_assignments():
        if assignment.is_active:
            by_driver.setdefault(assignment.driver_id, []).append(assignment)

    drivers: List[Dict[str, Any]] = []
    for driver_id, assignments in by_driver.items():
        try:
            resolution = resolve_shifts(driver_id, assignments, now=now, tz=tz)
        except ShiftTimeError as exc:
            print(f"[shifts] board failed for {driver_id}: {exc}")
            raise HTTPException(status_code=500, detail=f"invalid shift data: {exc}") from exc
        location = await ledger.get(driver_id)
        entry = resolution.to_dict()
        entry.update(
            {
                "driver_id": driver_id,
                "current_route": await _route_dict(roster, resolution.current),
                "next_route": await _route_dict(roster, resolution.next),
                "is_transmitting": bool(location and location.is_transmitting),
            }
        )
        drivers.append(entry)
    drivers.sort(key=lambda d: d["driver_id"])
    return {"drivers": drivers, "local_time": local_hhmm(now, tz), "timezone": tz.key}


@router.get("/api/health")
async def health(request: Request):
    return {
        "ok": True,
        "timezone": request.app.state.tz.key,
        "connections": _broadcaster(request).connection_count(),
        "locations": await _ledger(request).count(),
    }


# ---------------------------
# WebSocket: drivers and viewers
# ---------------------------
def _queue_reply(sub: Subscription, message: Dict[str, Any]) -> None:
    try:
        sub.queue.put_nowait(json.dumps(message))
    except asyncio.QueueFull:
        print(f"[ws] reply dropped for {sub.connection_id}")


async def handle_socket_message(app: FastAPI, sub: Subscription, text: str) -> None:
    ledger: LocationLedger = app.state.ledger
    broadcaster: LiveBroadcaster = app.state.broadcaster
    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        _queue_reply(sub, {"type": "error", "detail": "invalid JSON"})
        return
    if not isinstance(message, dict):
        _queue_reply(sub, {"type": "error", "detail": "message must be an object"})
        return

    kind = message.get("type")
    if kind == "locationUpdate":
        try:
            sample = parse_location_payload(message.get("location"))
        except ValueError as exc:
            _queue_reply(sub, {"type": "error", "detail": str(exc)})
            return
        record = await ledger.upsert(**sample)
        broadcaster.broadcast(LocationUpdate.from_record(record), exclude=sub.connection_id)
    elif kind == "transmissionStatus":
        driver_id = message.get("driver_id")
        is_transmitting = message.get("is_transmitting")
        if not isinstance(driver_id, str) or not driver_id.strip() or not isinstance(is_transmitting, bool):
            _queue_reply(sub, {"type": "error", "detail": "driver_id and is_transmitting are required"})
            return
        driver_id = driver_id.strip()
        await ledger.set_transmitting(driver_id, is_transmitting)
        if is_transmitting:
            broadcaster.broadcast(TransmissionStatusUpdate(driver_id=driver_id, is_transmitting=True))
        else:
            broadcaster.broadcast(TransmissionStopped(driver_id=driver_id))
    else:
        _queue_reply(sub, {"type": "error", "detail": f"unknown message type {kind!r}"})


@router.websocket("/ws")
async def live_socket(websocket: WebSocket):
    broadcaster: LiveBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    sub = broadcaster.subscribe("ws")
    print(f"[ws] connection {sub.connection_id} opened")

    async def _pump() -> None:
        while True:
            encoded = await sub.queue.get()
            await websocket.send_text(encoded)

    pump: Optional[asyncio.Task] = None
    try:
        await websocket.send_json({"type": "connected", "connection_id": sub.connection_id})
        pump = asyncio.create_task(_pump())
        while True:
            text = await websocket.receive_text()
            await handle_socket_message(websocket.app, sub, text)
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.unsubscribe(sub)
        if pump is not None:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
        print(f"[ws] connection {sub.connection_id} closed")


# ---------------------------
# SSE: Live locations
# ---------------------------
async def location_stream(
    request: Request,
    ledger: LocationLedger,
    broadcaster: LiveBroadcaster,
    keepalive_s: float = SSE_KEEPALIVE_S,
) -> AsyncIterator[str]:
    sub = broadcaster.subscribe("sse")
    try:
        # Send current state immediately on connect
        snapshot = [r.to_dict() for r in await ledger.list_transmitting()]
        yield f"data: {json.dumps({'type': 'snapshot', 'locations': snapshot})}\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                encoded = await asyncio.wait_for(sub.queue.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"data: {encoded}\n\n"
    finally:
        broadcaster.unsubscribe(sub)


@router.get("/v1/stream/locations")
async def stream_locations(request: Request):
    """SSE stream for viewers that only listen.

    Sends the transmitting snapshot on connect, then every broadcast event.
    """
    gen = location_stream(request, _ledger(request), _broadcaster(request))
    return StreamingResponse(gen, media_type="text/event-stream")


# ---------------------------
# Stale transmission sweeper
# ---------------------------
async def run_stale_sweep_once(app: FastAPI) -> int:
    ledger: LocationLedger = app.state.ledger
    broadcaster: LiveBroadcaster = app.state.broadcaster
    expired = await ledger.expire_stale(timedelta(seconds=app.state.stale_after_s))
    for record in expired:
        broadcaster.broadcast(TransmissionStopped(driver_id=record.driver_id))
        print(f"[sweeper] expired stale transmission for {record.driver_id}")
    return len(expired)


async def sweep_stale_transmissions(app: FastAPI) -> None:
    while True:
        await asyncio.sleep(STALE_SWEEP_INTERVAL_S)
        try:
            await run_stale_sweep_once(app)
        except OSError as exc:
            print(f"[sweeper] error: {exc}")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    sweeper: Optional[asyncio.Task] = None
    if app.state.stale_after_s > 0:
        sweeper = asyncio.create_task(sweep_stale_transmissions(app))
        print(f"[startup] stale sweeper enabled ({app.state.stale_after_s}s)")
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)


# ---------------------------
# App factory
# ---------------------------
def create_app(
    data_dir: Optional[Path] = None,
    tz_name: Optional[str] = None,
    queue_size: Optional[int] = None,
    stale_after_s: Optional[int] = None,
    now_fn: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    """Build an app that owns its own ledger, roster and broadcaster."""
    base = Path(data_dir) if data_dir is not None else DATA_DIR
    tz = ZoneInfo(tz_name or OPERATIONAL_TZ_NAME)

    app = FastAPI(title="Fleet Live Tracking", lifespan=_lifespan)
    app.state.tz = tz
    app.state.ledger = LocationLedger(base / LOCATIONS_FILE_NAME)
    app.state.roster = RosterStore(base / ROSTER_FILE_NAME)
    app.state.broadcaster = LiveBroadcaster(queue_size or SUBSCRIBER_QUEUE_SIZE)
    app.state.stale_after_s = STALE_TRANSMIT_S if stale_after_s is None else stale_after_s
    app.state.now_fn = now_fn or (lambda: datetime.now(tz))
    app.include_router(router)
    return app


app = create_app()
