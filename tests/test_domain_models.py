"""
Tests for domain models.
"""

import pendulum
import pytest
from datetime import time

from bookingengine.domain.exceptions import InvalidStatusTransition
from bookingengine.domain.models import (
    BusinessHours,
    BusyOrigin,
    CalendarBusyBlock,
    IdempotencyRecord,
    Reservation,
    ReservationStatus,
    TimeRange,
    intervals_overlap,
    latest_end,
    local_day_window,
)
from bookingengine.domain.outcomes import BookingConfirmed


NY = "America/New_York"


def _range(start: str, end: str, tz: str = NY) -> TimeRange:
    return TimeRange(start=pendulum.parse(start, tz=tz), end=pendulum.parse(end, tz=tz))


class TestTimeRange:
    """Tests for TimeRange."""

    def test_valid_time_range(self):
        """Test creating a valid time range."""
        time_range = _range("2024-11-25 10:00", "2024-11-25 11:00")

        assert time_range.duration_minutes() == 60

    def test_invalid_time_range(self):
        """Test that start must be before end."""
        with pytest.raises(ValueError):
            _range("2024-11-25 11:00", "2024-11-25 10:00")

        with pytest.raises(ValueError):
            _range("2024-11-25 10:00", "2024-11-25 10:00")

    def test_overlaps(self):
        """Test overlap detection."""
        range1 = _range("2024-11-25 14:00", "2024-11-25 16:00")
        range2 = _range("2024-11-25 15:00", "2024-11-25 17:00")
        range3 = _range("2024-11-25 16:00", "2024-11-25 18:00")

        assert range1.overlaps(range2)
        assert range2.overlaps(range1)
        assert not range1.overlaps(range3)  # touching
        assert not range3.overlaps(range1)

    def test_overlap_is_symmetric_across_timezones(self):
        """Same instants expressed in different zones compare equal."""
        local = _range("2024-11-25 14:00", "2024-11-25 16:00")
        utc = _range("2024-11-25 20:30", "2024-11-25 21:30", tz="UTC")

        assert intervals_overlap(local, utc) == intervals_overlap(utc, local)
        assert intervals_overlap(local, utc)

    def test_intersect(self):
        """Test intersection calculation."""
        range1 = _range("2024-11-25 10:00", "2024-11-25 12:00")
        range2 = _range("2024-11-25 11:00", "2024-11-25 13:00")

        intersection = range1.intersect(range2)

        assert intersection is not None
        assert intersection.start.hour == 11
        assert intersection.end.hour == 12
        assert range1.intersect(_range("2024-11-25 12:00", "2024-11-25 13:00")) is None

    def test_expand(self):
        expanded = _range("2024-11-25 10:00", "2024-11-25 11:00").expand(15)

        assert expanded.start == pendulum.datetime(2024, 11, 25, 9, 45, tz=NY)
        assert expanded.end == pendulum.datetime(2024, 11, 25, 11, 15, tz=NY)

    def test_local_label(self):
        utc = _range("2024-11-25 19:00", "2024-11-25 21:00", tz="UTC")

        assert utc.local_label(NY) == "2:00 PM – 4:00 PM"


def test_local_day_window_covers_local_date():
    moment = pendulum.datetime(2024, 11, 26, 2, 0, tz="UTC")  # 21:00 on the 25th in New York

    window = local_day_window(moment, NY)

    assert window.start == pendulum.datetime(2024, 11, 25, tz=NY)
    assert window.end == pendulum.datetime(2024, 11, 26, tz=NY)


def test_latest_end():
    ranges = [
        _range("2024-11-25 09:00", "2024-11-25 10:00"),
        _range("2024-11-25 14:00", "2024-11-25 16:00"),
        _range("2024-11-25 13:00", "2024-11-25 15:00"),
    ]

    assert latest_end(ranges) == pendulum.datetime(2024, 11, 25, 16, tz=NY)


class TestBusinessHours:
    """Tests for BusinessHours."""

    def test_from_mapping(self):
        hours = BusinessHours.from_mapping({
            "Monday": [["09:00", "12:00"], ["13:00", "17:00"]],
            "saturday": [],
        })

        assert hours.ranges[0] == ((time(9, 0), time(12, 0)), (time(13, 0), time(17, 0)))
        assert hours.is_open_on(0)
        assert not hours.is_open_on(5)  # empty list means closed
        assert not hours.is_open_on(1)

    def test_windows_for_date(self):
        hours = BusinessHours.from_mapping({"monday": [["09:00", "17:00"]]})

        windows = hours.windows_for(pendulum.date(2024, 11, 25), NY)

        assert len(windows) == 1
        assert windows[0].start == pendulum.datetime(2024, 11, 25, 9, tz=NY)
        assert windows[0].end == pendulum.datetime(2024, 11, 25, 17, tz=NY)
        assert hours.windows_for(pendulum.date(2024, 11, 26), NY) == []

    def test_rejects_overlapping_ranges(self):
        with pytest.raises(ValueError, match="ordered and disjoint"):
            BusinessHours.from_mapping({"monday": [["09:00", "13:00"], ["12:00", "17:00"]]})

    def test_rejects_inverted_range(self):
        with pytest.raises(ValueError):
            BusinessHours.from_mapping({"monday": [["17:00", "09:00"]]})

    def test_rejects_unknown_weekday(self):
        with pytest.raises(ValueError, match="Unknown weekday"):
            BusinessHours.from_mapping({"funday": [["09:00", "17:00"]]})

    def test_rejects_bad_clock(self):
        with pytest.raises(ValueError, match="HH:MM"):
            BusinessHours.from_mapping({"monday": [["9am", "17:00"]]})


class TestReservation:
    """Tests for Reservation lifecycle."""

    def _reservation(self, status=ReservationStatus.PENDING):
        return Reservation(
            id="r1",
            subject_id="det-1",
            interval=_range("2024-11-25 14:00", "2024-11-25 16:00"),
            status=status,
            customer_name="Alex",
        )

    def test_allowed_transitions(self):
        pending = self._reservation()

        confirmed = pending.with_status(ReservationStatus.CONFIRMED)
        completed = confirmed.with_status(ReservationStatus.COMPLETED)

        assert pending.status is ReservationStatus.PENDING
        assert confirmed.status is ReservationStatus.CONFIRMED
        assert completed.status is ReservationStatus.COMPLETED
        assert pending.with_status(ReservationStatus.CANCELLED).status is ReservationStatus.CANCELLED

    def test_terminal_states_are_final(self):
        cancelled = self._reservation(ReservationStatus.CANCELLED)

        with pytest.raises(InvalidStatusTransition):
            cancelled.with_status(ReservationStatus.CONFIRMED)

    def test_pending_cannot_complete(self):
        with pytest.raises(InvalidStatusTransition):
            self._reservation().with_status(ReservationStatus.COMPLETED)

    def test_active_statuses(self):
        assert ReservationStatus.PENDING.is_active
        assert ReservationStatus.CONFIRMED.is_active
        assert not ReservationStatus.CANCELLED.is_active
        assert not ReservationStatus.COMPLETED.is_active

    def test_display_label(self):
        assert self._reservation().display_label == "Alex"


def test_busy_block_default_labels():
    interval = _range("2024-11-25 10:00", "2024-11-25 11:00")

    assert CalendarBusyBlock(interval, BusyOrigin.EXTERNAL).display_label == "Calendar event"
    assert CalendarBusyBlock(interval, BusyOrigin.INTERNAL).display_label == "Blocked time"
    assert CalendarBusyBlock(interval, BusyOrigin.INTERNAL, "Lunch").display_label == "Lunch"


def test_idempotency_record_expiry():
    created = pendulum.datetime(2024, 11, 25, 12, tz="UTC")
    record = IdempotencyRecord(
        key="k",
        outcome=BookingConfirmed(booking_id="b1", start_utc_iso="x", end_utc_iso="y"),
        created_at=created,
        expires_at=created.add(hours=24),
    )

    assert not record.is_expired(created.add(hours=23))
    assert record.is_expired(created.add(hours=24))
