"""
Storage contract consumed by the engine.

The engine is agnostic to the storage technology. Any implementation must make
``create_if_no_overlap`` atomic per subject, via a serializable transaction,
an exclusion constraint over ``(subject_id, interval)`` or a per-subject lease.
"""

from __future__ import annotations

from typing import Collection, List, Protocol

from pendulum import DateTime

from ..domain.models import (
    CalendarBusyBlock,
    IdempotencyRecord,
    Reservation,
    ReservationStatus,
    Subject,
    TimeRange,
)


class ReservationStore(Protocol):
    """Transactional CRUD plus the atomic create-if-no-overlap primitive."""

    async def get_subject(self, subject_id: str) -> Subject:
        """
        Raises:
            SubjectNotFound: If the subject is unknown
        """

    async def list_reservations(
        self,
        subject_id: str,
        window: TimeRange,
        statuses: Collection[ReservationStatus],
    ) -> List[Reservation]:
        """Reservations in ``statuses`` whose interval intersects ``window``."""

    async def list_busy_blocks(self, subject_id: str, window: TimeRange) -> List[CalendarBusyBlock]:
        """Internally recorded calendar blocks intersecting ``window``."""

    async def get_reservation(self, reservation_id: str) -> Reservation:
        """
        Raises:
            ReservationNotFound: If the id is unknown
        """

    async def create_if_no_overlap(
        self,
        reservation: Reservation,
        idempotency_record: IdempotencyRecord | None = None,
    ) -> Reservation:
        """
        Insert the reservation and its idempotency record in one transaction.

        Raises:
            IdempotencyKeyReplay: If the record's key already holds an outcome
            ConflictError: If an active reservation or internal block overlaps
            TransientStorageError: If the store is temporarily unavailable
        """

    async def update_status(self, reservation_id: str, status: ReservationStatus) -> Reservation:
        """
        Raises:
            ReservationNotFound: If the id is unknown
            InvalidStatusTransition: If the lifecycle forbids the change
        """

    async def get_idempotency_record(self, key: str, now: DateTime) -> IdempotencyRecord | None:
        """Return the live record for ``key``; expired records count as absent."""

    async def save_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        """Insert if absent. Returns whichever record holds the key afterwards."""

    async def purge_expired_idempotency_records(self, now: DateTime) -> int:
        """Delete expired records and return how many were removed."""
