"""
Unit tests for shift resolution.

Tests cover:
- Current/next resolution including the gap and wraparound cases
- Inclusive shift boundaries and overlap tie-breaking
- Operational time zone handling
- Shift queue classification
- Remaining time in the current shift
- Malformed and overnight shift windows
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from roster_store import Assignment  # noqa: E402
from shift_resolver import (  # noqa: E402
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    ShiftTimeError,
    format_remaining,
    local_hhmm,
    parse_hhmm,
    remaining_time,
    resolve_shifts,
    shift_queue,
    validate_shift_window,
)

GT_TZ = ZoneInfo("America/Guatemala")
DRIVER = "driver-1"


def _assignment(assignment_id, start, end, driver_id=DRIVER, is_active=True, assigned_date="2025-05-01"):
    return Assignment(
        id=assignment_id,
        driver_id=driver_id,
        route_id="route-1",
        assigned_date=assigned_date,
        shift_start=start,
        shift_end=end,
        is_active=is_active,
    )


def _at(hour, minute):
    return datetime(2025, 5, 1, hour, minute, tzinfo=GT_TZ)


@pytest.fixture()
def two_shifts():
    return [_assignment("morning", "08:00", "12:00"), _assignment("afternoon", "13:00", "17:00")]


class TestResolveShifts:
    """Scenarios for current/next resolution."""

    def test_inside_first_shift(self, two_shifts):
        result = resolve_shifts(DRIVER, two_shifts, now=_at(10, 30), tz=GT_TZ)
        assert result.current.id == "morning"
        assert result.next.id == "afternoon"

    def test_gap_between_shifts(self, two_shifts):
        result = resolve_shifts(DRIVER, two_shifts, now=_at(12, 30), tz=GT_TZ)
        assert result.current is None
        assert result.next.id == "afternoon"

    def test_past_all_shifts_wraps_to_earliest(self, two_shifts):
        result = resolve_shifts(DRIVER, two_shifts, now=_at(18, 0), tz=GT_TZ)
        assert result.current is None
        assert result.next.id == "morning"

    def test_before_all_shifts(self, two_shifts):
        result = resolve_shifts(DRIVER, two_shifts, now=_at(6, 0), tz=GT_TZ)
        assert result.current is None
        assert result.next.id == "morning"

    def test_no_assignments(self):
        result = resolve_shifts(DRIVER, [], now=_at(10, 0), tz=GT_TZ)
        assert result.current is None
        assert result.next is None
        assert result.to_dict() == {"current": None, "next": None}

    def test_bounds_are_inclusive(self, two_shifts):
        assert resolve_shifts(DRIVER, two_shifts, now=_at(8, 0), tz=GT_TZ).current.id == "morning"
        assert resolve_shifts(DRIVER, two_shifts, now=_at(12, 0), tz=GT_TZ).current.id == "morning"
        assert resolve_shifts(DRIVER, two_shifts, now=_at(17, 0), tz=GT_TZ).current.id == "afternoon"

    def test_shift_starting_now_is_not_next(self, two_shifts):
        result = resolve_shifts(DRIVER, two_shifts, now=_at(13, 0), tz=GT_TZ)
        assert result.current.id == "afternoon"
        # Nothing starts strictly after 13:00, so next wraps around
        assert result.next.id == "morning"

    def test_input_order_does_not_matter(self, two_shifts):
        result = resolve_shifts(DRIVER, list(reversed(two_shifts)), now=_at(10, 30), tz=GT_TZ)
        assert result.current.id == "morning"
        assert result.next.id == "afternoon"

    def test_overlap_earliest_start_wins(self):
        assignments = [_assignment("late", "09:00", "11:00"), _assignment("early", "08:00", "12:00")]
        result = resolve_shifts(DRIVER, assignments, now=_at(10, 0), tz=GT_TZ)
        assert result.current.id == "early"

    def test_equal_start_keeps_creation_order(self):
        assignments = [_assignment("first", "08:00", "10:00"), _assignment("second", "08:00", "12:00")]
        result = resolve_shifts(DRIVER, assignments, now=_at(9, 0), tz=GT_TZ)
        assert result.current.id == "first"

    def test_inactive_assignments_are_ignored(self, two_shifts):
        two_shifts[0].is_active = False
        result = resolve_shifts(DRIVER, two_shifts, now=_at(10, 30), tz=GT_TZ)
        assert result.current is None
        assert result.next.id == "afternoon"

    def test_other_drivers_are_ignored(self, two_shifts):
        two_shifts.append(_assignment("someone-else", "10:00", "11:00", driver_id="driver-2"))
        result = resolve_shifts(DRIVER, two_shifts, now=_at(10, 30), tz=GT_TZ)
        assert result.current.id == "morning"

    def test_assigned_date_is_not_used(self):
        assignments = [_assignment("old", "08:00", "12:00", assigned_date="2020-01-01")]
        result = resolve_shifts(DRIVER, assignments, now=_at(10, 0), tz=GT_TZ)
        assert result.current.id == "old"

    def test_dict_assignments_are_accepted(self):
        assignments = [{"id": "a", "driver_id": DRIVER, "shift_start": "08:00", "shift_end": "09:00", "is_active": True}]
        result = resolve_shifts(DRIVER, assignments, now=_at(8, 30), tz=GT_TZ)
        assert result.to_dict()["current"]["id"] == "a"

    def test_current_always_contains_now(self, two_shifts):
        assignments = two_shifts + [_assignment("evening", "19:30", "22:15")]
        start = _at(0, 0)
        for step in range(0, 24 * 60, 7):
            now = start + timedelta(minutes=step)
            hhmm = now.strftime("%H:%M")
            result = resolve_shifts(DRIVER, assignments, now=now, tz=GT_TZ)
            containing = [a for a in assignments if a.shift_start <= hhmm <= a.shift_end]
            if containing:
                assert result.current is containing[0]
            else:
                assert result.current is None
            later = [a for a in assignments if a.shift_start > hhmm]
            expected_next = later[0] if later else assignments[0]
            assert result.next is expected_next


class TestTimeZone:
    def test_utc_instant_is_read_on_operational_clock(self, two_shifts):
        # 16:30 UTC is 10:30 in Guatemala (UTC-6)
        now = datetime(2025, 5, 1, 16, 30, tzinfo=timezone.utc)
        assert local_hhmm(now, GT_TZ) == "10:30"
        assert resolve_shifts(DRIVER, two_shifts, now=now, tz=GT_TZ).current.id == "morning"

    def test_naive_datetime_is_treated_as_utc(self):
        assert local_hhmm(datetime(2025, 5, 1, 16, 30), GT_TZ) == "10:30"

    def test_other_zone_input(self):
        tokyo = datetime(2025, 5, 2, 1, 30, tzinfo=ZoneInfo("Asia/Tokyo"))
        assert local_hhmm(tokyo, GT_TZ) == "10:30"


class TestShiftQueue:
    def test_classifies_each_shift(self, two_shifts):
        two_shifts.append(_assignment("evening", "18:00", "21:00"))
        entries = shift_queue(DRIVER, two_shifts, now=_at(14, 0), tz=GT_TZ)
        assert [(e.assignment.id, e.status) for e in entries] == [
            ("morning", STATUS_COMPLETED),
            ("afternoon", STATUS_IN_PROGRESS),
            ("evening", STATUS_PENDING),
        ]

    def test_ordered_by_start_with_creation_tiebreak(self):
        assignments = [
            _assignment("b", "10:00", "11:00"),
            _assignment("a1", "07:00", "08:00"),
            _assignment("a2", "07:00", "09:00"),
        ]
        entries = shift_queue(DRIVER, assignments, now=_at(6, 0), tz=GT_TZ)
        assert [e.assignment.id for e in entries] == ["a1", "a2", "b"]
        assert all(e.status == STATUS_PENDING for e in entries)

    def test_boundary_minutes_are_in_progress(self, two_shifts):
        entries = shift_queue(DRIVER, two_shifts, now=_at(12, 0), tz=GT_TZ)
        assert entries[0].status == STATUS_IN_PROGRESS

    def test_to_dict(self, two_shifts):
        entry = shift_queue(DRIVER, two_shifts, now=_at(6, 0), tz=GT_TZ)[0].to_dict()
        assert entry["status"] == STATUS_PENDING
        assert entry["assignment"]["shift_start"] == "08:00"


class TestRemainingTime:
    def test_time_left_in_shift(self):
        shift = _assignment("a", "08:00", "12:00")
        delta = remaining_time(shift, now=_at(10, 30), tz=GT_TZ)
        assert delta == timedelta(hours=1, minutes=30)
        assert format_remaining(delta) == "1h 30m"

    def test_finished_shift(self):
        shift = _assignment("a", "08:00", "12:00")
        assert remaining_time(shift, now=_at(12, 1), tz=GT_TZ) is None
        assert format_remaining(None) == "finished"


class TestValidation:
    @pytest.mark.parametrize("value", ["8:00", "24:00", "12:60", "noon", "", None, "12:00:00"])
    def test_rejects_malformed_times(self, value):
        with pytest.raises(ShiftTimeError):
            parse_hhmm(value)

    def test_accepts_boundaries(self):
        assert parse_hhmm("00:00").hour == 0
        assert parse_hhmm("23:59").minute == 59

    def test_rejects_overnight_window(self):
        with pytest.raises(ShiftTimeError):
            validate_shift_window("22:00", "06:00")

    def test_resolve_fails_on_malformed_shift(self, two_shifts):
        two_shifts.append(_assignment("broken", "7am", "09:00"))
        with pytest.raises(ShiftTimeError):
            resolve_shifts(DRIVER, two_shifts, now=_at(10, 0), tz=GT_TZ)

    def test_resolve_fails_on_overnight_shift(self):
        with pytest.raises(ShiftTimeError):
            resolve_shifts(DRIVER, [_assignment("night", "22:00", "06:00")], now=_at(23, 0), tz=GT_TZ)

    def test_shift_time_error_is_value_error(self):
        assert issubclass(ShiftTimeError, ValueError)
