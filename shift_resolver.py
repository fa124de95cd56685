"""
Shift Resolver

Works out which of a driver's assignments is in progress and which one is
up next, using the wall clock of the operational region.

Resolution Logic:
- Only active assignments for the driver take part; ``assigned_date`` is
  informational and is not used to decide whether a shift is "today"
- The current time is reduced to HH:MM in the operational time zone
- "current" is the earliest-starting assignment whose window contains now
  (both ends inclusive)
- "next" is the earliest assignment starting strictly after now, wrapping
  around to the first assignment of the day when nothing is left
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, time, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

OPERATIONAL_TZ_NAME = os.getenv("OPERATIONAL_TZ", "America/Guatemala")
OPERATIONAL_TZ = ZoneInfo(OPERATIONAL_TZ_NAME)

HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"


class ShiftTimeError(ValueError):
    """Raised when a shift boundary is malformed or cannot be compared."""


@dataclass
class ShiftResolution:
    """Current and next shift for a driver."""
    current: Optional[Any] = None
    next: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": _as_dict(self.current),
            "next": _as_dict(self.next),
        }


@dataclass
class ShiftQueueEntry:
    """One assignment in a driver's daily queue."""
    assignment: Any
    status: str  # pending | in_progress | completed

    def to_dict(self) -> Dict[str, Any]:
        return {"assignment": _as_dict(self.assignment), "status": self.status}


def _as_dict(assignment: Any) -> Optional[Dict[str, Any]]:
    if assignment is None:
        return None
    if isinstance(assignment, dict):
        return dict(assignment)
    return assignment.to_dict()


def _field(assignment: Any, name: str) -> Any:
    if isinstance(assignment, dict):
        return assignment.get(name)
    return getattr(assignment, name, None)


def parse_hhmm(value: Any) -> time:
    """
    Parse a 24-hour zero-padded ``HH:MM`` string.

    Args:
        value: The raw shift boundary

    Returns:
        The parsed time of day

    Raises:
        ShiftTimeError: if the value is not a valid ``HH:MM`` string
    """
    if not isinstance(value, str):
        raise ShiftTimeError(f"invalid shift time {value!r}; expected HH:MM")
    match = HHMM_RE.match(value.strip())
    if not match:
        raise ShiftTimeError(f"invalid shift time {value!r}; expected HH:MM")
    return time(int(match.group(1)), int(match.group(2)))


def validate_shift_window(shift_start: Any, shift_end: Any) -> Tuple[time, time]:
    """
    Validate a shift window and return its parsed boundaries.

    Overnight windows (end before start) are rejected: every comparison in
    this module is a same-day comparison.
    """
    start = parse_hhmm(shift_start)
    end = parse_hhmm(shift_end)
    if end < start:
        raise ShiftTimeError(
            f"overnight shift {shift_start}-{shift_end} is not supported; "
            "shift_end must be on or after shift_start"
        )
    return start, end


def _to_operational(now: Optional[datetime], tz: Optional[ZoneInfo]) -> datetime:
    zone = tz or OPERATIONAL_TZ
    if now is None:
        return datetime.now(zone)
    if now.tzinfo is None:
        # Naive timestamps are UTC; the server's own zone never applies.
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(zone)


def local_hhmm(now: Optional[datetime] = None, tz: Optional[ZoneInfo] = None) -> str:
    """Format ``now`` as HH:MM on the operational wall clock."""
    return _to_operational(now, tz).strftime("%H:%M")


def _participating(driver_id: Any, assignments: Sequence[Any]) -> List[Tuple[time, time, Any]]:
    windows: List[Tuple[time, time, Any]] = []
    for assignment in assignments:
        if driver_id is not None and _field(assignment, "driver_id") != driver_id:
            continue
        if not _field(assignment, "is_active"):
            continue
        start, end = validate_shift_window(
            _field(assignment, "shift_start"), _field(assignment, "shift_end")
        )
        windows.append((start, end, assignment))
    # sort() is stable, so equal starts keep creation order
    windows.sort(key=lambda w: w[0])
    return windows


def resolve_shifts(
    driver_id: Any,
    assignments: Sequence[Any],
    now: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None,
) -> ShiftResolution:
    """
    Determine the driver's current and next shift.

    Args:
        driver_id: Driver whose assignments are resolved (None skips the filter)
        assignments: Assignment records or dicts, in creation order
        now: Current instant in any timezone (defaults to now)
        tz: Operational time zone (defaults to OPERATIONAL_TZ)

    Returns:
        ShiftResolution; both fields are None when the driver has no
        active assignments

    Raises:
        ShiftTimeError: if any participating assignment has a malformed or
        overnight window
    """
    windows = _participating(driver_id, assignments)
    if not windows:
        return ShiftResolution()

    current_time = parse_hhmm(local_hhmm(now, tz))

    current = None
    for start, end, assignment in windows:
        if start <= current_time <= end:
            current = assignment
            break

    upcoming = None
    for start, _end, assignment in windows:
        if start > current_time:
            upcoming = assignment
            break
    if upcoming is None:
        # Daily pattern: wrap around to the first shift of the day
        upcoming = windows[0][2]

    return ShiftResolution(current=current, next=upcoming)


def shift_queue(
    driver_id: Any,
    assignments: Sequence[Any],
    now: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None,
) -> List[ShiftQueueEntry]:
    """Classify each active assignment as pending, in progress or completed."""
    windows = _participating(driver_id, assignments)
    current_time = parse_hhmm(local_hhmm(now, tz))
    entries: List[ShiftQueueEntry] = []
    for start, end, assignment in windows:
        if current_time < start:
            status = STATUS_PENDING
        elif current_time > end:
            status = STATUS_COMPLETED
        else:
            status = STATUS_IN_PROGRESS
        entries.append(ShiftQueueEntry(assignment=assignment, status=status))
    return entries


def remaining_time(
    assignment: Any,
    now: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None,
) -> Optional[timedelta]:
    """
    Time left until ``shift_end`` on today's operational wall clock.

    Returns None once the end has passed.
    """
    _start, end = validate_shift_window(
        _field(assignment, "shift_start"), _field(assignment, "shift_end")
    )
    local_now = _to_operational(now, tz)
    end_dt = local_now.replace(hour=end.hour, minute=end.minute, second=0, microsecond=0)
    if end_dt < local_now:
        return None
    return end_dt - local_now


def format_remaining(delta: Optional[timedelta]) -> str:
    if delta is None:
        return "finished"
    total_minutes = int(delta.total_seconds() // 60)
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"


__all__ = [
    "OPERATIONAL_TZ",
    "OPERATIONAL_TZ_NAME",
    "ShiftTimeError",
    "ShiftResolution",
    "ShiftQueueEntry",
    "STATUS_PENDING",
    "STATUS_IN_PROGRESS",
    "STATUS_COMPLETED",
    "parse_hhmm",
    "validate_shift_window",
    "local_hhmm",
    "resolve_shifts",
    "shift_queue",
    "remaining_time",
    "format_remaining",
]
