"""
Contract for externally synced calendars.

Credentials are passed explicitly into every call. Adapters never keep a
process-wide access token; ``refresh_credentials`` mints a fresh
``CalendarCredentials`` per request from the stored refresh token.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol

import pendulum
from pendulum import DateTime

from ..domain.models import CalendarBusyBlock, Reservation, TimeRange


@dataclass(frozen=True)
class CalendarCredentials:
    """Short-lived access to one subject's external calendar."""
    subject_id: str
    access_token: str
    calendar_id: str = "primary"
    expires_at: DateTime | None = None

    def is_expired(self, now: DateTime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or pendulum.now("UTC")) >= self.expires_at

    @property
    def authorization_header(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}


class ExternalCalendarAdapter(Protocol):
    """Behaviour the engine needs from an external calendar provider."""

    async def refresh_credentials(self, subject_id: str) -> CalendarCredentials:
        """
        Exchange the stored refresh token for fresh credentials.

        Raises:
            AuthenticationError: If no refresh token is stored or it is rejected
            ExternalCalendarUnavailable: If the provider cannot be reached
        """

    async def fetch_busy_blocks(
        self,
        subject_id: str,
        window: TimeRange,
        credentials: CalendarCredentials,
    ) -> List[CalendarBusyBlock]:
        """
        Return external busy blocks intersecting ``window``.

        Raises:
            CredentialsExpired: If the provider rejects the access token
            ExternalCalendarUnavailable: On any other provider failure
        """

    async def push_reservation(
        self,
        subject_id: str,
        reservation: Reservation,
        credentials: CalendarCredentials,
    ) -> str:
        """
        Mirror a committed reservation as an external event.

        Returns:
            The provider's event id
        """
