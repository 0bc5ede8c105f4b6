"""
Adapters layer - storage and external calendar integrations.
"""

from .calendar_adapter import CalendarCredentials, ExternalCalendarAdapter
from .credential_store import CredentialStore
from .google_calendar import GoogleCalendarAdapter
from .graph_calendar import GraphCalendarAdapter
from .memory_store import InMemoryReservationStore
from .mock_calendar import MockCalendarAdapter

__all__ = [
    "CalendarCredentials",
    "CredentialStore",
    "ExternalCalendarAdapter",
    "GoogleCalendarAdapter",
    "GraphCalendarAdapter",
    "InMemoryReservationStore",
    "MockCalendarAdapter",
]
