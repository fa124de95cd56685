"""Current-position ledger for drivers, one record per driver."""

import asyncio
import json
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class LocationRecord:
    """Latest known position of a driver."""
    driver_id: str
    latitude: str
    longitude: str
    is_transmitting: bool
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


def _now_iso(now: Optional[datetime] = None) -> str:
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str) -> Optional[datetime]:
    try:
        dt = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_degrees(value: Any, label: str, limit: int) -> str:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{label} is required")
    text = str(value).strip()
    try:
        number = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"invalid {label} {value!r}; expected decimal degrees") from exc
    if not number.is_finite() or abs(number) > limit:
        raise ValueError(f"{label} out of range: {text}")
    return text


def parse_location_payload(payload: Any) -> Dict[str, Any]:
    """
    Validate an inbound location sample.

    Coordinates are checked as decimal degrees but returned as the original
    text so the stored value is exactly what the driver sent.

    Raises:
        ValueError: when a field is missing or malformed
    """
    if not isinstance(payload, dict):
        raise ValueError("location payload must be an object")
    driver_id = payload.get("driver_id")
    if not isinstance(driver_id, str) or not driver_id.strip():
        raise ValueError("driver_id is required")
    is_transmitting = payload.get("is_transmitting", True)
    if not isinstance(is_transmitting, bool):
        raise ValueError("is_transmitting must be a boolean")
    return {
        "driver_id": driver_id.strip(),
        "latitude": _parse_degrees(payload.get("latitude"), "latitude", 90),
        "longitude": _parse_degrees(payload.get("longitude"), "longitude", 180),
        "is_transmitting": is_transmitting,
    }


class LocationLedger:
    """File-backed ledger of driver positions, keyed by driver id.

    Every public call runs under a single lock, so find-or-create is one
    step and callers never read-then-write across two calls. Driver ids are
    not validated; location data is best-effort.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._records: Dict[str, LocationRecord] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._records.clear()
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[ledger] failed to load {self._path}: {exc}")
            return
        entries = raw.get("locations", []) if isinstance(raw, dict) else []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            driver_id = entry.get("driver_id")
            latitude = entry.get("latitude")
            longitude = entry.get("longitude")
            if not driver_id or latitude is None or longitude is None:
                continue
            self._records[driver_id] = LocationRecord(
                driver_id=driver_id,
                latitude=str(latitude),
                longitude=str(longitude),
                is_transmitting=bool(entry.get("is_transmitting", False)),
                timestamp=entry.get("timestamp") or _now_iso(),
            )

    def _serialise_state(self) -> str:
        data = {
            "locations": [record.to_dict() for record in self._records.values()],
            "updated_at": _now_iso(),
        }
        return json.dumps(data, indent=2, sort_keys=True)

    async def _persist(self) -> None:
        payload = self._serialise_state()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(payload)
        tmp_path.replace(self._path)

    async def upsert(
        self,
        driver_id: str,
        latitude: str,
        longitude: str,
        is_transmitting: bool,
        now: Optional[datetime] = None,
    ) -> LocationRecord:
        """Overwrite the driver's record in place, creating it if missing."""
        async with self._lock:
            record = self._records.get(driver_id)
            if record is None:
                record = LocationRecord(
                    driver_id=driver_id,
                    latitude=latitude,
                    longitude=longitude,
                    is_transmitting=is_transmitting,
                    timestamp=_now_iso(now),
                )
                self._records[driver_id] = record
            else:
                record.latitude = latitude
                record.longitude = longitude
                record.is_transmitting = is_transmitting
                record.timestamp = _now_iso(now)
            await self._persist()
            return LocationRecord(**record.to_dict())

    async def get(self, driver_id: str) -> Optional[LocationRecord]:
        async with self._lock:
            record = self._records.get(driver_id)
            if record is None:
                return None
            return LocationRecord(**record.to_dict())

    async def list_transmitting(self) -> List[LocationRecord]:
        async with self._lock:
            return [
                LocationRecord(**r.to_dict())
                for r in self._records.values()
                if r.is_transmitting
            ]

    async def list_all(self) -> List[LocationRecord]:
        async with self._lock:
            return [LocationRecord(**r.to_dict()) for r in self._records.values()]

    async def set_transmitting(
        self,
        driver_id: str,
        is_transmitting: bool,
        now: Optional[datetime] = None,
    ) -> Optional[LocationRecord]:
        """Update only the flag and timestamp. Returns None if the driver has no record."""
        async with self._lock:
            record = self._records.get(driver_id)
            if record is None:
                return None
            record.is_transmitting = is_transmitting
            record.timestamp = _now_iso(now)
            await self._persist()
            return LocationRecord(**record.to_dict())

    async def expire_stale(
        self,
        older_than: timedelta,
        now: Optional[datetime] = None,
    ) -> List[LocationRecord]:
        """Stop transmitting records whose last write is older than ``older_than``."""
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        cutoff = now - older_than
        expired: List[LocationRecord] = []
        async with self._lock:
            for record in self._records.values():
                if not record.is_transmitting:
                    continue
                ts = _parse_ts(record.timestamp)
                if ts is not None and ts >= cutoff:
                    continue
                record.is_transmitting = False
                record.timestamp = _now_iso(now)
                expired.append(LocationRecord(**record.to_dict()))
            if expired:
                await self._persist()
        return expired

    async def count(self) -> int:
        async with self._lock:
            return len(self._records)


__all__ = ["LocationRecord", "LocationLedger", "parse_location_payload"]
