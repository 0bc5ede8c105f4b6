"""
In-memory ReservationStore for tests, demos and the CLI.

Serializes commits per subject with an ``asyncio.Lock`` (the lease) and
performs check-then-insert without yielding to the event loop, so a commit is
all-or-nothing even when the calling task is cancelled.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Collection, Dict, Iterable, List

import pendulum
from pendulum import DateTime

from ..domain.exceptions import (
    ConflictError,
    IdempotencyKeyReplay,
    ReservationNotFound,
    SubjectNotFound,
)
from ..domain.models import (
    ACTIVE_STATUSES,
    BusyOrigin,
    CalendarBusyBlock,
    IdempotencyRecord,
    Reservation,
    ReservationStatus,
    Subject,
    TimeRange,
)


logger = logging.getLogger(__name__)


class InMemoryReservationStore:
    """Dictionary-backed implementation of ``ReservationStore``."""

    def __init__(
        self,
        subjects: Iterable[Subject] = (),
        reservations: Iterable[Reservation] = (),
        blocks: Dict[str, List[CalendarBusyBlock]] | None = None,
    ):
        self._subjects: Dict[str, Subject] = {subject.id: subject for subject in subjects}
        self._reservations: Dict[str, Reservation] = {r.id: r for r in reservations}
        self._blocks: Dict[str, List[CalendarBusyBlock]] = defaultdict(list)
        for subject_id, subject_blocks in (blocks or {}).items():
            self._blocks[subject_id].extend(subject_blocks)
        self._idempotency: Dict[str, IdempotencyRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def add_block(self, subject_id: str, block: CalendarBusyBlock) -> None:
        self._blocks[subject_id].append(block)

    def all_reservations(self) -> List[Reservation]:
        return sorted(self._reservations.values(), key=lambda r: r.interval.start)

    async def get_subject(self, subject_id: str) -> Subject:
        try:
            return self._subjects[subject_id]
        except KeyError:
            raise SubjectNotFound(f"Subject not found: {subject_id}") from None

    async def list_reservations(
        self,
        subject_id: str,
        window: TimeRange,
        statuses: Collection[ReservationStatus] = ACTIVE_STATUSES,
    ) -> List[Reservation]:
        return self._find_reservations(subject_id, window, statuses)

    async def list_busy_blocks(self, subject_id: str, window: TimeRange) -> List[CalendarBusyBlock]:
        return self._find_blocks(subject_id, window)

    async def get_reservation(self, reservation_id: str) -> Reservation:
        try:
            return self._reservations[reservation_id]
        except KeyError:
            raise ReservationNotFound(f"Reservation not found: {reservation_id}") from None

    async def create_if_no_overlap(
        self,
        reservation: Reservation,
        idempotency_record: IdempotencyRecord | None = None,
    ) -> Reservation:
        async with self._locks[reservation.subject_id]:
            if reservation.subject_id not in self._subjects:
                raise SubjectNotFound(f"Subject not found: {reservation.subject_id}")

            if idempotency_record is not None:
                self._drop_expired(idempotency_record.created_at)
                existing = self._live_record(idempotency_record.key, idempotency_record.created_at)
                if existing is not None:
                    raise IdempotencyKeyReplay(existing)

            clashing = self._find_reservations(reservation.subject_id, reservation.interval, ACTIVE_STATUSES)
            blocks = self._find_blocks(reservation.subject_id, reservation.interval)
            if clashing or blocks:
                raise ConflictError(
                    f"Slot {reservation.interval} is no longer free for {reservation.subject_id}",
                    reservations=clashing,
                    blocks=blocks,
                )

            self._reservations[reservation.id] = reservation
            if idempotency_record is not None:
                self._idempotency[idempotency_record.key] = idempotency_record

        logger.debug("Stored reservation %s for %s", reservation.id, reservation.subject_id)
        return reservation

    async def update_status(self, reservation_id: str, status: ReservationStatus) -> Reservation:
        current = await self.get_reservation(reservation_id)
        async with self._locks[current.subject_id]:
            updated = self._reservations[reservation_id].with_status(status)
            self._reservations[reservation_id] = updated
        return updated

    async def get_idempotency_record(self, key: str, now: DateTime) -> IdempotencyRecord | None:
        return self._live_record(key, now)

    async def save_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        self._drop_expired(record.created_at)
        existing = self._live_record(record.key, record.created_at)
        if existing is not None:
            return existing
        self._idempotency[record.key] = record
        return record

    async def purge_expired_idempotency_records(self, now: DateTime) -> int:
        return self._drop_expired(now)

    def idempotency_record_count(self) -> int:
        return len(self._idempotency)

    def _drop_expired(self, now: DateTime) -> int:
        # every write sweeps, so the map holds at most one TTL of records
        expired = [key for key, record in self._idempotency.items() if record.is_expired(now)]
        for key in expired:
            del self._idempotency[key]
        if expired:
            logger.debug("Purged %d expired idempotency records", len(expired))
        return len(expired)

    def _live_record(self, key: str, now: DateTime) -> IdempotencyRecord | None:
        record = self._idempotency.get(key)
        if record is None or record.is_expired(now):
            return None
        return record

    def _find_reservations(
        self,
        subject_id: str,
        window: TimeRange,
        statuses: Collection[ReservationStatus],
    ) -> List[Reservation]:
        return [
            r for r in self._reservations.values()
            if r.subject_id == subject_id and r.status in statuses and r.interval.overlaps(window)
        ]

    def _find_blocks(self, subject_id: str, window: TimeRange) -> List[CalendarBusyBlock]:
        return [block for block in self._blocks.get(subject_id, []) if block.interval.overlaps(window)]


def load_reservations_file(data_file: Path) -> List[Reservation]:
    """
    Load seed reservations from JSON.

    Format::

        [{"id": "r1", "subjectId": "det-1", "start": "2024-11-25T14:00:00-05:00",
          "end": "2024-11-25T16:00:00-05:00", "status": "confirmed",
          "customerName": "Sam"}]
    """
    with open(data_file, "r", encoding="utf-8") as f:
        data = json.load(f)

    reservations: List[Reservation] = []
    for item in data:
        reservations.append(
            Reservation(
                id=item["id"],
                subject_id=item["subjectId"],
                interval=TimeRange(
                    start=pendulum.parse(item["start"]).in_timezone("UTC"),
                    end=pendulum.parse(item["end"]).in_timezone("UTC"),
                ),
                status=ReservationStatus(item.get("status", "confirmed")),
                source=item.get("source", "import"),
                title=item.get("title", ""),
                customer_name=item.get("customerName", ""),
                customer_phone=item.get("customerPhone", ""),
            )
        )
    return reservations


def internal_block(start: DateTime, end: DateTime, label: str = "") -> CalendarBusyBlock:
    """Shorthand for an internally recorded calendar block."""
    return CalendarBusyBlock(interval=TimeRange(start=start, end=end), origin=BusyOrigin.INTERNAL, label=label)
