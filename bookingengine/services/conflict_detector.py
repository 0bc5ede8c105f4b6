"""
Conflict detection for one candidate interval.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List

from ..domain.models import (
    ACTIVE_STATUSES,
    BusyOrigin,
    CalendarBusyBlock,
    Reservation,
    Subject,
    TimeRange,
    local_day_window,
)
from ..domain.outcomes import ConflictEntry
from .external_calendar import ExternalBusySource
from .storage import ReservationStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictItem:
    """An existing item overlapping the candidate, with display metadata."""
    label: str
    time: str
    kind: str
    interval: TimeRange

    def to_entry(self) -> ConflictEntry:
        return ConflictEntry(label=self.label, time=self.time, type=self.kind)


def conflict_items(
    candidate: TimeRange,
    reservations: Iterable[Reservation],
    blocks: Iterable[CalendarBusyBlock],
    timezone: str,
) -> List[ConflictItem]:
    """
    Apply the half-open overlap rule and describe every clash.

    Touching intervals (one ends exactly when the other starts) are not conflicts.
    """
    items: List[ConflictItem] = []

    for reservation in reservations:
        if reservation.status in ACTIVE_STATUSES and reservation.interval.overlaps(candidate):
            items.append(
                ConflictItem(
                    label=reservation.display_label,
                    time=reservation.interval.local_label(timezone),
                    kind="booking",
                    interval=reservation.interval,
                )
            )

    for block in blocks:
        if block.interval.overlaps(candidate):
            items.append(
                ConflictItem(
                    label=block.display_label,
                    time=block.interval.local_label(timezone),
                    kind="external" if block.origin is BusyOrigin.EXTERNAL else "block",
                    interval=block.interval,
                )
            )

    return sorted(items, key=lambda item: item.interval.start)


class ConflictDetector:
    """
    Checks a candidate interval against a subject's current state.

    Loads active reservations and internal blocks over the candidate's local
    day window, plus external blocks when a calendar is connected. External
    failures are logged and ignored.
    """

    def __init__(self, store: ReservationStore, external: ExternalBusySource | None = None):
        self._store = store
        self._external = external or ExternalBusySource(adapter=None)

    async def find_conflicts(
        self,
        candidate: TimeRange,
        subject: Subject | str,
        timezone: str | None = None,
    ) -> List[ConflictItem]:
        """
        Return every item overlapping ``candidate``, earliest first.

        Raises:
            SubjectNotFound: If the subject is unknown
        """
        if isinstance(subject, str):
            subject = await self._store.get_subject(subject)
        tz = timezone or subject.timezone

        window = TimeRange(
            start=local_day_window(candidate.start, tz).start,
            end=local_day_window(candidate.end.subtract(microseconds=1), tz).end,
        )

        reservations = await self._store.list_reservations(subject.id, window, ACTIVE_STATUSES)
        blocks = await self._store.list_busy_blocks(subject.id, window)
        external_blocks, _ = await self._external.fetch_or_degrade(subject, window)

        items = conflict_items(candidate, reservations, list(blocks) + external_blocks, tz)
        if items:
            logger.info("Found %d conflict(s) for %s at %s", len(items), subject.id, candidate)
        return items
