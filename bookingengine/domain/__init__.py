"""
Domain layer - Pure business logic without external dependencies.
"""

from .models import (
    BusinessHours,
    BusyOrigin,
    CalendarBusyBlock,
    IdempotencyRecord,
    NormalizedSlot,
    Reservation,
    ReservationStatus,
    SlotSuggestion,
    Subject,
    TimeRange,
    intervals_overlap,
)
from .slot_calculator import AvailableSlots, SlotCalculator
from .suggestions import SuggestionGenerator
from .time_normalizer import AmbiguousTimePolicy, TimeNormalizer

__all__ = [
    "AmbiguousTimePolicy",
    "AvailableSlots",
    "BusinessHours",
    "BusyOrigin",
    "CalendarBusyBlock",
    "IdempotencyRecord",
    "NormalizedSlot",
    "Reservation",
    "ReservationStatus",
    "SlotCalculator",
    "SlotSuggestion",
    "Subject",
    "SuggestionGenerator",
    "TimeNormalizer",
    "TimeRange",
    "intervals_overlap",
]
