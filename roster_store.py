import asyncio
import json
import re
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from shift_resolver import parse_hhmm, validate_shift_window

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Route:
    id: str
    name: str
    number: int
    start_time: str
    end_time: str
    frequency_min: int
    is_active: bool = True
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Assignment:
    id: str
    driver_id: str
    route_id: str
    assigned_date: str
    shift_start: str
    shift_end: str
    is_active: bool = True
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _clean_field(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def _require(payload: Dict[str, Any], key: str) -> str:
    value = _clean_field(payload.get(key))
    if not value:
        raise ValueError(f"{key} is required")
    return value


def _positive_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{key} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be an integer") from exc
    if number <= 0:
        raise ValueError(f"{key} must be positive")
    return number


def _bool_field(payload: Dict[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


def _validate_date(value: str) -> str:
    if not DATE_RE.match(value):
        raise ValueError(f"invalid assigned_date {value!r}; expected YYYY-MM-DD")
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise ValueError(f"invalid assigned_date {value!r}; expected YYYY-MM-DD") from exc
    return value


class RosterStore:
    """Routes and driver assignments, persisted as one JSON document.

    Assignments are kept in creation order; shift resolution relies on that
    order to break ties between equal start times.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._routes: Dict[str, Route] = {}
        self._assignments: Dict[str, Assignment] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._routes.clear()
        self._assignments.clear()
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[roster] failed to load {self._path}: {exc}")
            return
        if not isinstance(raw, dict):
            return
        for entry in raw.get("routes", []):
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            try:
                route = Route(**{k: entry[k] for k in Route.__dataclass_fields__ if k in entry})
            except TypeError:
                continue
            self._routes[route.id] = route
        for entry in raw.get("assignments", []):
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            try:
                assignment = Assignment(
                    **{k: entry[k] for k in Assignment.__dataclass_fields__ if k in entry}
                )
            except TypeError:
                continue
            self._assignments[assignment.id] = assignment

    async def _persist(self) -> None:
        data = {
            "routes": [route.to_dict() for route in self._routes.values()],
            "assignments": [a.to_dict() for a in self._assignments.values()],
            "updated_at": _now_iso(),
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        tmp_path.replace(self._path)

    # ---------------------------
    # Routes
    # ---------------------------
    async def list_routes(self) -> List[Route]:
        async with self._lock:
            return list(self._routes.values())

    async def get_route(self, route_id: str) -> Optional[Route]:
        async with self._lock:
            return self._routes.get(route_id)

    def _route_fields(self, payload: Dict[str, Any], base: Optional[Route] = None) -> Dict[str, Any]:
        current = base.to_dict() if base else {}
        merged = {**current, **payload}
        name = _require(merged, "name")
        number = _positive_int(merged.get("number"), "number")
        start_time = _require(merged, "start_time")
        end_time = _require(merged, "end_time")
        parse_hhmm(start_time)
        parse_hhmm(end_time)
        frequency_min = _positive_int(merged.get("frequency_min"), "frequency_min")
        is_active = _bool_field(merged, "is_active", True)
        return {
            "name": name,
            "number": number,
            "start_time": start_time,
            "end_time": end_time,
            "frequency_min": frequency_min,
            "is_active": is_active,
        }

    async def create_route(self, payload: Dict[str, Any]) -> Route:
        fields = self._route_fields(payload)
        async with self._lock:
            route = Route(id=str(uuid.uuid4()), **fields)
            self._routes[route.id] = route
            await self._persist()
            return route

    async def update_route(self, route_id: str, payload: Dict[str, Any]) -> Route:
        async with self._lock:
            route = self._routes.get(route_id)
            if route is None:
                raise KeyError(route_id)
            fields = self._route_fields(payload, base=route)
            for key, value in fields.items():
                setattr(route, key, value)
            await self._persist()
            return route

    async def delete_route(self, route_id: str) -> bool:
        async with self._lock:
            if route_id not in self._routes:
                return False
            del self._routes[route_id]
            await self._persist()
            return True

    # ---------------------------
    # Assignments
    # ---------------------------
    async def list_assignments(self) -> List[Assignment]:
        async with self._lock:
            return list(self._assignments.values())

    async def list_assignments_for_driver(
        self, driver_id: str, active_only: bool = True
    ) -> List[Assignment]:
        async with self._lock:
            return [
                a
                for a in self._assignments.values()
                if a.driver_id == driver_id and (a.is_active or not active_only)
            ]

    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        async with self._lock:
            return self._assignments.get(assignment_id)

    async def create_assignment(self, payload: Dict[str, Any]) -> Assignment:
        driver_id = _require(payload, "driver_id")
        route_id = _require(payload, "route_id")
        assigned_date = _validate_date(_require(payload, "assigned_date"))
        shift_start = _require(payload, "shift_start")
        shift_end = _require(payload, "shift_end")
        validate_shift_window(shift_start, shift_end)
        is_active = _bool_field(payload, "is_active", True)

        async with self._lock:
            assignment = Assignment(
                id=str(uuid.uuid4()),
                driver_id=driver_id,
                route_id=route_id,
                assigned_date=assigned_date,
                shift_start=shift_start,
                shift_end=shift_end,
                is_active=is_active,
            )
            self._assignments[assignment.id] = assignment
            await self._persist()
            return assignment

    async def set_assignment_active(self, assignment_id: str, is_active: bool) -> Assignment:
        if not isinstance(is_active, bool):
            raise ValueError("is_active must be a boolean")
        async with self._lock:
            assignment = self._assignments.get(assignment_id)
            if assignment is None:
                raise KeyError(assignment_id)
            assignment.is_active = is_active
            await self._persist()
            return assignment

    async def delete_assignment(self, assignment_id: str) -> bool:
        async with self._lock:
            if assignment_id not in self._assignments:
                return False
            del self._assignments[assignment_id]
            await self._persist()
            return True


__all__ = ["Route", "Assignment", "RosterStore"]
