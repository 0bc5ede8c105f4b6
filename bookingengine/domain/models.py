"""
Domain models for intervals, business hours, reservations and busy blocks.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

import pendulum
from pendulum import Date, DateTime

from .exceptions import InvalidStatusTransition
from .outcomes import BookingOutcome


WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


@dataclass(frozen=True)
class TimeRange:
    """
    Represents an immutable half-open time range ``[start, end)``.

    Invariant: start must be before end.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"Start time {self.start} must be before end time {self.end}")

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, other: "TimeRange") -> bool:
        """Check if this range overlaps with another. Touching ranges do not."""
        return intervals_overlap(self, other)

    def intersect(self, other: "TimeRange") -> "TimeRange | None":
        """
        Calculate the intersection of two time ranges.
        Returns None if there is no overlap.
        """
        if not self.overlaps(other):
            return None

        start = max(self.start, other.start)
        end = min(self.end, other.end)

        return TimeRange(start=start, end=end)

    def expand(self, minutes: int) -> "TimeRange":
        """Widen the range by ``minutes`` on both sides."""
        if minutes <= 0:
            return self
        return TimeRange(
            start=self.start.subtract(minutes=minutes),
            end=self.end.add(minutes=minutes),
        )

    def in_timezone(self, tz: str) -> "TimeRange":
        return TimeRange(start=self.start.in_timezone(tz), end=self.end.in_timezone(tz))

    def local_label(self, tz: str) -> str:
        """Format as ``h:mm A – h:mm A`` in the given timezone."""
        start = self.start.in_timezone(tz)
        end = self.end.in_timezone(tz)
        return f"{start.format('h:mm A')} – {end.format('h:mm A')}"

    def __str__(self) -> str:
        return f"{self.start.format('YYYY-MM-DD HH:mm')} - {self.end.format('HH:mm')}"


def intervals_overlap(a: TimeRange, b: TimeRange) -> bool:
    """
    Half-open overlap rule: ``[s1, e1)`` and ``[s2, e2)`` conflict iff
    ``s1 < e2 and s2 < e1``.
    """
    return a.start < b.end and b.start < a.end


def local_day_window(moment: DateTime, tz: str) -> TimeRange:
    """Return the local calendar day containing ``moment`` as a TimeRange."""
    local = moment.in_timezone(tz)
    return TimeRange(start=local.start_of("day"), end=local.add(days=1).start_of("day"))


def parse_clock(value: str) -> time:
    """Parse a ``HH:MM`` business-hours boundary."""
    try:
        hour_str, minute_str = value.strip().split(":")
        return time(hour=int(hour_str), minute=int(minute_str))
    except ValueError as exc:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM") from exc


@dataclass(frozen=True)
class BusinessHours:
    """
    Opening hours per weekday (0=Monday, 6=Sunday).

    Each day holds an ordered tuple of disjoint local ``[start, end)``
    time-of-day ranges. A missing or empty day means closed.
    """
    ranges: Mapping[int, Tuple[Tuple[time, time], ...]] = field(default_factory=dict)

    def __post_init__(self):
        for weekday, day_ranges in self.ranges.items():
            if weekday not in range(7):
                raise ValueError(f"Weekday must be between 0 and 6, got {weekday}")
            previous_end: time | None = None
            for start, end in day_ranges:
                if start >= end:
                    raise ValueError(
                        f"Business hours on {WEEKDAY_NAMES[weekday]} must open before they close"
                    )
                if previous_end is not None and start < previous_end:
                    raise ValueError(
                        f"Business hours on {WEEKDAY_NAMES[weekday]} must be ordered and disjoint"
                    )
                previous_end = end

    @classmethod
    def from_mapping(cls, data: Mapping[str, Sequence[Sequence[str]]]) -> "BusinessHours":
        """
        Build from ``{"monday": [["09:00", "17:00"]], ...}``.
        """
        ranges: Dict[int, Tuple[Tuple[time, time], ...]] = {}
        for day_name, day_ranges in data.items():
            key = day_name.strip().lower()
            if key not in WEEKDAY_NAMES:
                raise ValueError(f"Unknown weekday {day_name!r}")
            parsed = []
            for pair in day_ranges or []:
                if len(pair) != 2:
                    raise ValueError(f"Business hours for {day_name} must be [start, end] pairs")
                parsed.append((parse_clock(pair[0]), parse_clock(pair[1])))
            ranges[WEEKDAY_NAMES.index(key)] = tuple(parsed)
        return cls(ranges=ranges)

    def is_open_on(self, weekday: int) -> bool:
        return bool(self.ranges.get(weekday))

    def windows_for(self, day: Date, tz: str) -> List[TimeRange]:
        """
        Get the opening windows for a specific local date.
        Returns an empty list if closed that day.
        """
        windows: List[TimeRange] = []
        for start, end in self.ranges.get(day.weekday(), ()):
            windows.append(
                TimeRange(
                    start=pendulum.datetime(day.year, day.month, day.day, start.hour, start.minute, tz=tz),
                    end=pendulum.datetime(day.year, day.month, day.day, end.hour, end.minute, tz=tz),
                )
            )
        return windows


@dataclass(frozen=True)
class Subject:
    """A bookable resource (service provider)."""
    id: str
    name: str
    timezone: str
    business_hours: BusinessHours
    calendar_provider: str = "none"
    calendar_id: str = "primary"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_active(self) -> bool:
        """Active reservations block the calendar."""
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({ReservationStatus.PENDING, ReservationStatus.CONFIRMED})

_ALLOWED_TRANSITIONS = {
    ReservationStatus.PENDING: {ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED},
    ReservationStatus.CONFIRMED: {ReservationStatus.CANCELLED, ReservationStatus.COMPLETED},
    ReservationStatus.CANCELLED: set(),
    ReservationStatus.COMPLETED: set(),
}


@dataclass(frozen=True)
class Reservation:
    """A booked appointment for a subject."""
    id: str
    subject_id: str
    interval: TimeRange
    status: ReservationStatus = ReservationStatus.CONFIRMED
    source: str = "AI"
    title: str = ""
    customer_name: str = ""
    customer_phone: str = ""
    meta: Mapping[str, Any] = field(default_factory=dict)
    created_at: DateTime = field(default_factory=lambda: pendulum.now("UTC"))

    @property
    def display_label(self) -> str:
        return self.title or self.customer_name or "Existing appointment"

    def with_status(self, status: ReservationStatus) -> "Reservation":
        """
        Return a copy in the new status.

        Raises:
            InvalidStatusTransition: If the lifecycle does not allow the change
        """
        if status == self.status:
            return self
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransition(
                f"Reservation {self.id} cannot move from {self.status.value} to {status.value}"
            )
        return replace(self, status=status)


class BusyOrigin(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"


@dataclass(frozen=True)
class CalendarBusyBlock:
    """An interval during which a subject is unavailable. Read-only signal."""
    interval: TimeRange
    origin: BusyOrigin
    label: str = ""

    @property
    def display_label(self) -> str:
        if self.label:
            return self.label
        return "Calendar event" if self.origin is BusyOrigin.EXTERNAL else "Blocked time"


@dataclass(frozen=True)
class IdempotencyRecord:
    """Maps a caller-supplied key to exactly one terminal outcome."""
    key: str
    outcome: BookingOutcome
    created_at: DateTime
    expires_at: DateTime

    def is_expired(self, now: DateTime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class SlotSuggestion:
    """An alternative slot offered after a conflict. Never persisted."""
    interval: TimeRange
    local_label: str
    start_local: str


@dataclass(frozen=True)
class NormalizedSlot:
    """Canonical UTC interval plus the local labels it was derived from."""
    interval: TimeRange
    timezone: str
    local_date: str
    start_local: str
    end_local: str

    @property
    def start_utc_iso(self) -> str:
        return self.interval.start.in_timezone("UTC").to_iso8601_string()

    @property
    def end_utc_iso(self) -> str:
        return self.interval.end.in_timezone("UTC").to_iso8601_string()


def latest_end(intervals: Iterable[TimeRange]) -> DateTime:
    """Return the latest end among the given intervals."""
    return max(interval.end for interval in intervals)
