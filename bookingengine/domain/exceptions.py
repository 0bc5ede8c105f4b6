"""
Domain-specific exception hierarchy for the booking engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List

if TYPE_CHECKING:  # pragma: no cover
    from .models import CalendarBusyBlock, IdempotencyRecord, Reservation


class BookingEngineError(Exception):
    """Base class for all application-level errors."""


class InvalidInputError(BookingEngineError):
    """Raised when caller input cannot be interpreted."""


class InvalidTimeFormat(InvalidInputError):
    """Raised when a time string matches no accepted grammar."""


class AmbiguousTime(InvalidTimeFormat):
    """Raised when a time without meridiem could be morning or afternoon."""


class InvalidDate(InvalidInputError):
    """Raised when a date string matches no accepted grammar."""


class InvalidTimezone(InvalidInputError):
    """Raised when a timezone identifier is unknown."""


class InvalidDuration(InvalidInputError):
    """Raised when a duration is not a positive number of minutes."""


class SubjectNotFound(BookingEngineError):
    """Raised when the bookable subject does not exist."""


class ReservationNotFound(BookingEngineError):
    """Raised when a reservation id is unknown to the store."""


class InvalidStatusTransition(BookingEngineError):
    """Raised when a reservation status change is not allowed."""


class ConflictError(BookingEngineError):
    """
    Raised by the store when a reservation would overlap active bookings.

    Terminal: never retried.
    """

    def __init__(
        self,
        message: str,
        reservations: "List[Reservation] | None" = None,
        blocks: "List[CalendarBusyBlock] | None" = None,
    ) -> None:
        super().__init__(message)
        self.reservations = list(reservations or [])
        self.blocks = list(blocks or [])


class TransientStorageError(BookingEngineError):
    """Raised when the store is temporarily unavailable. Safe to retry."""


class IdempotencyKeyReplay(BookingEngineError):
    """
    Raised by the store when an idempotency key already holds an outcome.

    Not an error for callers: the coordinator answers with ``record.outcome``.
    """

    def __init__(self, record: "IdempotencyRecord") -> None:
        super().__init__(f"Idempotency key already used: {record.key}")
        self.record = record


class CalendarAPIError(BookingEngineError):
    """Raised when calendar data cannot be fetched or parsed."""


class ExternalCalendarUnavailable(CalendarAPIError):
    """Raised when the external calendar cannot be reached in time."""


class CredentialsExpired(ExternalCalendarUnavailable):
    """Raised when the provider rejects the access token."""


class AuthenticationError(BookingEngineError):
    """Raised when authentication or token handling fails."""
