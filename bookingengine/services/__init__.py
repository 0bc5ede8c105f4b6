"""
Service layer that orchestrates storage, external calendars and domain logic.
"""

from .availability import AvailabilityComputer
from .booking_coordinator import BookingCoordinator, BookingPhase, scoped_idempotency_key
from .conflict_detector import ConflictDetector, ConflictItem, conflict_items
from .external_calendar import ExternalBusySource
from .retry import RetryPolicy, call_with_retry, retrying
from .schemas import BookingRequest
from .storage import ReservationStore

__all__ = [
    "AvailabilityComputer",
    "BookingCoordinator",
    "BookingPhase",
    "BookingRequest",
    "ConflictDetector",
    "ConflictItem",
    "ExternalBusySource",
    "ReservationStore",
    "RetryPolicy",
    "call_with_retry",
    "conflict_items",
    "retrying",
    "scoped_idempotency_key",
]
