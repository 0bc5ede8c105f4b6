"""
Idempotent, authoritative booking commit.

A booking runs through explicit phases::

    RECEIVED -> (REPLAYED) | NORMALIZED -> ADVISORY_CHECK -> COMMIT -> COMMITTED
                                                 |              |
                                                 +--> CONFLICTED <--+

``ADVISORY_CHECK`` reads current state through the ConflictDetector and can be
stale by the time ``COMMIT`` runs. ``COMMIT`` is the store's atomic
create-if-no-overlap, so of two racing overlapping requests exactly one wins
and the other ends in ``CONFLICTED``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Set, Tuple

import pendulum
from pendulum import DateTime
from pydantic import ValidationError

from ..domain.exceptions import (
    ConflictError,
    ExternalCalendarUnavailable,
    IdempotencyKeyReplay,
    InvalidInputError,
    SubjectNotFound,
    TransientStorageError,
)
from ..domain.models import (
    IdempotencyRecord,
    NormalizedSlot,
    Reservation,
    ReservationStatus,
    Subject,
    latest_end,
)
from ..domain.outcomes import (
    BookingConfirmed,
    BookingConflict,
    BookingOutcome,
    ErrorResponse,
    SuggestionEntry,
)
from ..domain.suggestions import SuggestionGenerator
from ..domain.time_normalizer import TimeNormalizer
from .conflict_detector import ConflictDetector, ConflictItem, conflict_items
from .external_calendar import ExternalBusySource
from .retry import RetryPolicy, Sleep, call_with_retry
from .schemas import BookingRequest
from .storage import ReservationStore


logger = logging.getLogger(__name__)


class BookingPhase(str, Enum):
    RECEIVED = "received"
    REPLAYED = "replayed"
    NORMALIZED = "normalized"
    ADVISORY_CHECK = "advisory_check"
    COMMIT = "commit"
    COMMITTED = "committed"
    CONFLICTED = "conflicted"


PhaseListener = Callable[[BookingPhase, BookingRequest], Awaitable[None]]


def scoped_idempotency_key(subject_id: str, key: str) -> str:
    """Namespace a caller key by subject so keys from different callers cannot collide."""
    return hashlib.sha256(f"{subject_id}:{key}".encode()).hexdigest()


class BookingCoordinator:
    """
    Orchestrates normalization, conflict checks and the atomic commit.

    No coordination state is kept in process: reservations and idempotency
    records live in the store, so any number of coordinators may share it.
    """

    def __init__(
        self,
        store: ReservationStore,
        normalizer: TimeNormalizer | None = None,
        detector: ConflictDetector | None = None,
        suggestions: SuggestionGenerator | None = None,
        external: ExternalBusySource | None = None,
        retry_policy: RetryPolicy | None = None,
        sync_retry_policy: RetryPolicy | None = None,
        idempotency_ttl_hours: int = 24,
        clock: Callable[[], DateTime] = pendulum.now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        phase_listener: PhaseListener | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._store = store
        self._external = external or ExternalBusySource(adapter=None)
        self._normalizer = normalizer or TimeNormalizer(clock=clock)
        self._detector = detector or ConflictDetector(store, self._external)
        self._suggestions = suggestions or SuggestionGenerator()
        self._retry_policy = retry_policy or RetryPolicy()
        self._sync_retry_policy = sync_retry_policy or RetryPolicy(
            retry_on=(ExternalCalendarUnavailable,)
        )
        self.idempotency_ttl_hours = idempotency_ttl_hours
        self._clock = clock
        self._id_factory = id_factory
        self._phase_listener = phase_listener
        self._sleep = sleep
        self._sync_tasks: Set[asyncio.Task] = set()

    async def book(self, request: BookingRequest) -> BookingOutcome:
        """
        Run one booking attempt.

        Returns:
            BookingConfirmed or BookingConflict (also on replay of a known key)

        Raises:
            InvalidInputError: If date, time, timezone or duration are invalid
            SubjectNotFound: If the subject is unknown
            TransientStorageError: If the store is temporarily unavailable
        """
        key = scoped_idempotency_key(request.subject_id, request.idempotency_key)
        await self._enter(BookingPhase.RECEIVED, request)

        record = await self._store.get_idempotency_record(key, self._clock())
        if record is not None:
            logger.info("Replaying stored outcome for idempotency key %s", request.idempotency_key)
            await self._enter(BookingPhase.REPLAYED, request)
            return record.outcome

        slot = self._normalizer.normalize(
            request.date, request.time, request.timezone, request.duration_minutes
        )
        subject = await self._store.get_subject(request.subject_id)
        await self._enter(BookingPhase.NORMALIZED, request)

        await self._enter(BookingPhase.ADVISORY_CHECK, request)
        conflicts = await self._detector.find_conflicts(slot.interval, subject, slot.timezone)
        if conflicts:
            return await self._reject(key, request, slot, conflicts)

        await self._enter(BookingPhase.COMMIT, request)
        reservation = Reservation(
            id=self._id_factory(),
            subject_id=subject.id,
            interval=slot.interval,
            status=ReservationStatus.CONFIRMED,
            source=request.source,
            title=request.title or request.customer_name,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            meta=dict(request.meta),
            created_at=self._clock().in_timezone("UTC"),
        )
        outcome = BookingConfirmed(
            booking_id=reservation.id,
            start_utc_iso=slot.start_utc_iso,
            end_utc_iso=slot.end_utc_iso,
        )

        try:
            await self._store.create_if_no_overlap(reservation, self._record(key, outcome))
        except IdempotencyKeyReplay as replay:
            logger.info("Idempotency key %s was settled concurrently", request.idempotency_key)
            await self._enter(BookingPhase.REPLAYED, request)
            return replay.record.outcome
        except ConflictError as exc:
            logger.info("Commit-time conflict for %s at %s", subject.id, slot.interval)
            items = conflict_items(slot.interval, exc.reservations, exc.blocks, slot.timezone)
            return await self._reject(key, request, slot, items or _unlabelled_conflict(slot))

        logger.info("Committed reservation %s for %s at %s", reservation.id, subject.id, slot.interval)
        await self._enter(BookingPhase.COMMITTED, request)
        self._schedule_sync(subject, reservation)
        return outcome

    async def book_with_retry(self, request: BookingRequest) -> BookingOutcome:
        """
        ``book`` wrapped in exponential backoff.

        Only ``TransientStorageError`` is retried. Conflicts are outcomes, and
        validation errors propagate on the first attempt.
        """
        return await call_with_retry(
            lambda: self.book(request),
            self._retry_policy,
            sleep=self._sleep,
            description=f"booking {request.idempotency_key}",
        )

    async def handle_booking_request(self, payload: Mapping[str, Any]) -> Tuple[int, Dict[str, Any]]:
        """
        Map a JSON payload to ``(http_status, body)``.

        201 success, 409 conflict, 400 invalid input, 404 unknown subject,
        503 storage unavailable after retries.
        """
        try:
            request = BookingRequest.model_validate(payload)
            outcome = await self.book_with_retry(request)
        except ValidationError as exc:
            error = ErrorResponse(reason="INVALID_INPUT", message=_summarize(exc))
        except InvalidInputError as exc:
            error = ErrorResponse(reason="INVALID_INPUT", message=str(exc))
        except SubjectNotFound as exc:
            error = ErrorResponse(reason="SUBJECT_NOT_FOUND", message=str(exc))
        except TransientStorageError as exc:
            logger.error("Booking storage unavailable after retries: %s", exc)
            error = ErrorResponse(
                reason="UNAVAILABLE",
                message="Booking service is temporarily unavailable. Please try again.",
            )
        else:
            return outcome.http_status, outcome.to_response()

        return error.http_status, error.to_response()

    async def update_status(self, reservation_id: str, status: ReservationStatus) -> Reservation:
        """
        Confirm, cancel or complete a reservation.

        Raises:
            ReservationNotFound: If the id is unknown
            InvalidStatusTransition: If the lifecycle forbids the change
        """
        reservation = await self._store.update_status(reservation_id, status)
        logger.info("Reservation %s is now %s", reservation_id, status.value)
        return reservation

    async def wait_for_sync(self) -> None:
        """Wait for outstanding calendar sync tasks (used on shutdown and in tests)."""
        if self._sync_tasks:
            await asyncio.gather(*list(self._sync_tasks))

    async def _reject(
        self,
        key: str,
        request: BookingRequest,
        slot: NormalizedSlot,
        conflicts: List[ConflictItem],
    ) -> BookingOutcome:
        suggestions = self._suggestions.suggest(
            latest_end(item.interval for item in conflicts),
            request.duration_minutes,
            slot.timezone,
        )
        outcome = BookingConflict(
            message=(
                "Time clash with existing appointment. Conflicts: "
                + ", ".join(item.label for item in conflicts)
            ),
            conflicts=[item.to_entry() for item in conflicts],
            suggestions=[
                SuggestionEntry(
                    start_local=suggestion.start_local,
                    start_iso=suggestion.interval.start.to_iso8601_string(),
                    label=suggestion.local_label,
                )
                for suggestion in suggestions
            ],
        )

        # A concurrent request may already own this key; its outcome wins
        stored = await self._store.save_idempotency_record(self._record(key, outcome))
        await self._enter(BookingPhase.CONFLICTED, request)
        return stored.outcome

    def _record(self, key: str, outcome: BookingOutcome) -> IdempotencyRecord:
        now = self._clock().in_timezone("UTC")
        return IdempotencyRecord(
            key=key,
            outcome=outcome,
            created_at=now,
            expires_at=now.add(hours=self.idempotency_ttl_hours),
        )

    async def _enter(self, phase: BookingPhase, request: BookingRequest) -> None:
        logger.debug("Booking %s entering %s", request.idempotency_key, phase.value)
        if self._phase_listener is not None:
            await self._phase_listener(phase, request)

    def _schedule_sync(self, subject: Subject, reservation: Reservation) -> None:
        if not self._external.enabled_for(subject):
            return
        task = asyncio.create_task(self._sync(subject, reservation))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _sync(self, subject: Subject, reservation: Reservation) -> None:
        try:
            event_id = await call_with_retry(
                lambda: self._external.push(subject, reservation),
                self._sync_retry_policy,
                sleep=self._sleep,
                description=f"calendar sync for {reservation.id}",
            )
        except ExternalCalendarUnavailable as exc:
            logger.warning("Calendar sync failed for reservation %s, booking kept: %s", reservation.id, exc)
        except Exception:
            logger.exception("Unexpected error syncing reservation %s, booking kept", reservation.id)
        else:
            logger.info("Synced reservation %s to external event %s", reservation.id, event_id)


def _unlabelled_conflict(slot: NormalizedSlot) -> List[ConflictItem]:
    return [
        ConflictItem(
            label="Existing appointment",
            time=slot.interval.local_label(slot.timezone),
            kind="booking",
            interval=slot.interval,
        )
    ]


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)
