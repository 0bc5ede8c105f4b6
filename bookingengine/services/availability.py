"""
Advisory availability listing.

Results may be stale by the time a caller books; the booking coordinator's
commit phase is the authoritative check.
"""

from __future__ import annotations

import logging
from typing import Callable, List

import pendulum
from pendulum import Date, DateTime

from ..domain.models import ACTIVE_STATUSES, TimeRange
from ..domain.slot_calculator import AvailableSlots, SlotCalculator
from ..domain.time_normalizer import resolve_timezone
from .external_calendar import ExternalBusySource
from .storage import ReservationStore


logger = logging.getLogger(__name__)


class AvailabilityComputer:
    """
    Merges business hours, reservations, internal blocks and external busy
    blocks into grid-aligned free slots.

    If the external calendar fails or times out, slots are computed from
    business hours and local data only, and the result is marked ``degraded``.
    """

    def __init__(
        self,
        store: ReservationStore,
        external: ExternalBusySource | None = None,
        step_minutes: int = 30,
        clock: Callable[[], DateTime] = pendulum.now,
    ):
        self._store = store
        self._external = external or ExternalBusySource(adapter=None)
        self.step_minutes = step_minutes
        self._clock = clock

    async def compute(
        self,
        subject_id: str,
        day: Date,
        duration_minutes: int,
        buffer_minutes: int = 0,
        timezone: str | None = None,
    ) -> AvailableSlots:
        """
        Compute free slots for one local date.

        Args:
            subject_id: Subject to list
            day: Local calendar date
            duration_minutes: Slot length
            buffer_minutes: Gap kept around every busy block
            timezone: Overrides the subject's timezone

        Returns:
            AvailableSlots, restartable and lazily evaluated

        Raises:
            SubjectNotFound: If the subject is unknown
        """
        subject = await self._store.get_subject(subject_id)
        tz = resolve_timezone(timezone or subject.timezone)

        day_start = pendulum.datetime(day.year, day.month, day.day, tz=tz)
        window = TimeRange(start=day_start, end=day_start.add(days=1)).expand(buffer_minutes)

        reservations = await self._store.list_reservations(subject_id, window, ACTIVE_STATUSES)
        internal_blocks = await self._store.list_busy_blocks(subject_id, window)
        external_blocks, degraded = await self._external.fetch_or_degrade(subject, window)

        busy = (
            [r.interval for r in reservations]
            + [b.interval for b in internal_blocks]
            + [b.interval for b in external_blocks]
        )
        logger.debug(
            "Availability for %s on %s: %d reservations, %d internal, %d external blocks",
            subject_id, day, len(reservations), len(internal_blocks), len(external_blocks),
        )

        calculator = SlotCalculator(subject.business_hours, step_minutes=self.step_minutes)
        return calculator.find_available_slots(
            day=day,
            timezone=tz,
            busy_ranges=busy,
            duration_minutes=duration_minutes,
            buffer_minutes=buffer_minutes,
            degraded=degraded,
        )

    async def upcoming(
        self,
        subject_id: str,
        duration_minutes: int,
        buffer_minutes: int = 0,
        days: int = 14,
        limit: int = 20,
        timezone: str | None = None,
    ) -> List[TimeRange]:
        """
        Scan forward from today and return at most ``limit`` future slots.
        """
        subject = await self._store.get_subject(subject_id)
        tz = resolve_timezone(timezone or subject.timezone)
        now = self._clock().in_timezone(tz)

        found: List[TimeRange] = []
        for offset in range(days):
            day = now.date().add(days=offset)
            slots = await self.compute(subject_id, day, duration_minutes, buffer_minutes, tz)
            for slot in slots:
                if slot.start < now:
                    continue
                found.append(slot)
                if len(found) >= limit:
                    return found

        return found
