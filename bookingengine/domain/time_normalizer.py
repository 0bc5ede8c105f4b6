"""
Turns casual local date/time input into a canonical UTC interval.

Accepted time grammar (case-insensitive, whitespace collapsed)::

    TIME     := HOUR [":" MINUTE] [MERIDIEM]
    MERIDIEM := "AM" | "PM" | "A.M." | "P.M."

Hours 1-12 without a meridiem are ambiguous and handled according to the
configured ``AmbiguousTimePolicy``. Everything else is rejected.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Callable, Tuple

import pendulum
from pendulum import Date, DateTime

from .exceptions import (
    AmbiguousTime,
    InvalidDate,
    InvalidDuration,
    InvalidTimeFormat,
    InvalidTimezone,
)
from .models import WEEKDAY_NAMES, NormalizedSlot, TimeRange


_TIME_PATTERN = re.compile(
    r"^(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s?(?P<meridiem>AM|PM|A\.M\.|P\.M\.)?$"
)
_ISO_DATE_PATTERN = re.compile(r"^(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})$")
_US_DATE_PATTERN = re.compile(r"^(?P<month>\d{1,2})[/-](?P<day>\d{1,2})[/-](?P<year>\d{4})$")
_NAMED_MONTH_FORMATS = ("MMM D, YYYY", "MMMM D, YYYY")

LOCAL_TIME_FORMAT = "h:mm A"


class AmbiguousTimePolicy(str, Enum):
    """How to read ``"10"`` or ``"10:30"`` when no meridiem is given."""
    ASSUME_AM = "assume_am"
    REJECT = "reject"


def resolve_timezone(tz: str) -> str:
    """
    Validate an IANA timezone identifier.

    Raises:
        InvalidTimezone: If the identifier is unknown
    """
    try:
        return pendulum.timezone(tz).name
    except (ValueError, KeyError) as exc:
        raise InvalidTimezone(f"Unknown timezone {tz!r}") from exc


def parse_local_time(
    value: str,
    policy: AmbiguousTimePolicy = AmbiguousTimePolicy.ASSUME_AM,
) -> Tuple[int, int]:
    """
    Parse a casual time-of-day string into ``(hour, minute)`` on a 24h clock.

    Raises:
        InvalidTimeFormat: If the input matches no accepted form
        AmbiguousTime: If the policy rejects an hour without meridiem
    """
    candidate = " ".join(value.split()).upper()
    match = _TIME_PATTERN.match(candidate)
    if not match:
        raise InvalidTimeFormat(
            f"Invalid time format: {value!r}. Use forms like '10', '10:30', '2 PM' or '2:30 pm'."
        )

    hour_text = match.group("hour")
    hour = int(hour_text)
    minute = int(match.group("minute") or 0)
    meridiem = (match.group("meridiem") or "").replace(".", "")

    if minute > 59:
        raise InvalidTimeFormat(f"Invalid time format: {value!r}. Minutes must be 00-59.")

    if meridiem:
        if not 1 <= hour <= 12:
            raise InvalidTimeFormat(
                f"Invalid time format: {value!r}. Hours must be 1-12 with AM/PM."
            )
        if meridiem == "AM":
            return (0 if hour == 12 else hour), minute
        return (12 if hour == 12 else hour + 12), minute

    if hour > 23:
        raise InvalidTimeFormat(f"Invalid time format: {value!r}. Hours must be 0-23.")

    # 24-hour clock readings: 0, 13-23, or a zero-padded hour such as "07:30"
    if hour == 0 or hour >= 13 or (len(hour_text) == 2 and hour_text.startswith("0")):
        return hour, minute

    if policy is AmbiguousTimePolicy.REJECT:
        raise AmbiguousTime(
            f"Ambiguous time {value!r}: add AM or PM (for example '{hour}:{minute:02d} PM')."
        )
    # read as AM, so "12:30" is half past midnight
    return (0 if hour == 12 else hour), minute


class TimeNormalizer:
    """
    Resolves local date/time/timezone/duration into a ``NormalizedSlot``.

    Relative dates ("today", "tomorrow", weekday names) are resolved against
    ``clock()`` expressed in the target timezone.
    """

    def __init__(
        self,
        ambiguous_time_policy: AmbiguousTimePolicy = AmbiguousTimePolicy.ASSUME_AM,
        clock: Callable[[], DateTime] = pendulum.now,
    ):
        self.ambiguous_time_policy = ambiguous_time_policy
        self._clock = clock

    def normalize(
        self,
        local_date: str,
        local_time: str,
        tz: str,
        duration_minutes: int,
    ) -> NormalizedSlot:
        """
        Build the canonical slot.

        Args:
            local_date: Date input, e.g. "2024-11-25", "tomorrow", "friday"
            local_time: Time input, e.g. "10", "10:30", "2 pm"
            tz: IANA timezone identifier
            duration_minutes: Slot length

        Returns:
            NormalizedSlot with a UTC interval and local display labels

        Raises:
            InvalidInputError: If any input is not understood
        """
        tz = resolve_timezone(tz)
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
            raise InvalidDuration(f"Duration must be a positive number of minutes, got {duration_minutes!r}")

        day = self.parse_date(local_date, tz)
        hour, minute = parse_local_time(local_time, self.ambiguous_time_policy)

        start_local = pendulum.datetime(day.year, day.month, day.day, hour, minute, tz=tz)
        end_local = start_local.add(minutes=duration_minutes)

        return NormalizedSlot(
            interval=TimeRange(
                start=start_local.in_timezone("UTC"),
                end=end_local.in_timezone("UTC"),
            ),
            timezone=tz,
            local_date=start_local.format("YYYY-MM-DD"),
            start_local=start_local.format(LOCAL_TIME_FORMAT),
            end_local=end_local.format(LOCAL_TIME_FORMAT),
        )

    def today(self, tz: str) -> Date:
        return self._clock().in_timezone(tz).date()

    def parse_date(self, value: str, tz: str) -> Date:
        """
        Parse a date string in the target timezone.

        Raises:
            InvalidDate: If the input matches no accepted form
        """
        text = " ".join(value.split())
        lowered = text.lower()
        today = self.today(tz)

        if lowered == "today":
            return today
        if lowered == "tomorrow":
            return today.add(days=1)

        weekday = _weekday_index(lowered)
        if weekday is not None:
            # Same weekday resolves to today, not next week
            return today.add(days=(weekday - today.weekday()) % 7)

        match = _ISO_DATE_PATTERN.match(text) or _US_DATE_PATTERN.match(text)
        if match:
            try:
                return pendulum.date(int(match.group("year")), int(match.group("month")), int(match.group("day")))
            except ValueError as exc:
                raise InvalidDate(f"Invalid date: {value!r} ({exc})") from exc

        for fmt in _NAMED_MONTH_FORMATS:
            try:
                return pendulum.from_format(text, fmt, tz=tz).date()
            except ValueError:
                continue

        raise InvalidDate(
            f"Unable to parse date: {value!r}. Use YYYY-MM-DD, 'today', 'tomorrow' or a weekday name."
        )


def _weekday_index(value: str) -> int | None:
    for index, name in enumerate(WEEKDAY_NAMES):
        if value in (name, name[:3]):
            return index
    return None
