"""
Core business logic for calculating bookable slots.

Pure domain logic without any external dependencies (no API calls, no
storage, no I/O). The service layer gathers busy data and hands it here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Sequence

from pendulum import Date, DateTime

from .models import BusinessHours, TimeRange


@dataclass(frozen=True)
class AvailableSlots:
    """
    A lazy, finite, restartable sequence of free slots.

    Every call to ``iter()`` walks the grid again from the first window, so the
    same object can be listed, counted and re-listed.
    """
    windows: Sequence[TimeRange]
    busy: Sequence[TimeRange]
    duration_minutes: int
    step_minutes: int
    timezone: str
    degraded: bool = False

    def __iter__(self) -> Iterator[TimeRange]:
        for window in self.windows:
            for candidate in _grid_candidates(window, self.duration_minutes, self.step_minutes, self.timezone):
                if not any(candidate.overlaps(busy) for busy in self.busy):
                    yield candidate

    def __bool__(self) -> bool:
        return next(iter(self), None) is not None

    def to_list(self) -> List[TimeRange]:
        return list(self)


class SlotCalculator:
    """
    Calculates bookable slots from business hours and busy ranges.

    Algorithm:
    1. Build the business-hour windows of the local date
    2. Expand every busy range by the buffer on both sides
    3. Walk a fixed grid anchored at local midnight inside each window
    4. Drop every candidate that overlaps an expanded busy range
    """

    def __init__(self, business_hours: BusinessHours, step_minutes: int = 30):
        if step_minutes <= 0:
            raise ValueError("step_minutes must be greater than zero")
        self.business_hours = business_hours
        self.step_minutes = step_minutes

    def find_available_slots(
        self,
        day: Date,
        timezone: str,
        busy_ranges: Sequence[TimeRange],
        duration_minutes: int,
        buffer_minutes: int = 0,
        degraded: bool = False,
    ) -> AvailableSlots:
        """
        Find the free grid slots of one local day.

        Args:
            day: Local calendar date
            timezone: IANA timezone the business hours are expressed in
            busy_ranges: Reservations and calendar blocks, any timezone
            duration_minutes: Length of each slot
            buffer_minutes: Gap kept free before and after every busy range
            degraded: Marks the result as computed without external data

        Returns:
            AvailableSlots (empty when the business is closed that day)
        """
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be greater than zero")

        windows = self.business_hours.windows_for(day, timezone)
        expanded = [busy.expand(buffer_minutes) for busy in busy_ranges]
        relevant = [busy for busy in expanded if any(busy.overlaps(window) for window in windows)]

        return AvailableSlots(
            windows=tuple(windows),
            busy=tuple(sorted(relevant, key=lambda r: r.start)),
            duration_minutes=duration_minutes,
            step_minutes=self.step_minutes,
            timezone=timezone,
            degraded=degraded,
        )


def _grid_candidates(
    window: TimeRange,
    duration_minutes: int,
    step_minutes: int,
    timezone: str,
) -> Iterator[TimeRange]:
    """
    Yield fixed-size candidates inside ``window`` whose starts fall on the grid.

    Example (step 30, duration 60):
    Window: 09:15 - 11:00
    Result: [09:30-10:30, 10:00-11:00]
    """
    cursor = _align_to_grid(window.start.in_timezone(timezone), step_minutes)
    while True:
        end = cursor.add(minutes=duration_minutes)
        if end > window.end:
            return
        yield TimeRange(start=cursor, end=end)
        cursor = cursor.add(minutes=step_minutes)


def _align_to_grid(moment: DateTime, step_minutes: int) -> DateTime:
    """Round up to the next multiple of ``step_minutes`` since local midnight."""
    midnight = moment.start_of("day")
    elapsed = int((moment - midnight).total_seconds())
    step_seconds = step_minutes * 60
    remainder = elapsed % step_seconds
    if remainder == 0:
        return moment
    return moment.add(seconds=step_seconds - remainder)
