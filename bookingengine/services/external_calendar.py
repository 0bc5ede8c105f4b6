"""
Time-bounded access to a subject's external calendar.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Tuple

from ..adapters.calendar_adapter import CalendarCredentials, ExternalCalendarAdapter
from ..domain.exceptions import (
    AuthenticationError,
    CalendarAPIError,
    CredentialsExpired,
    ExternalCalendarUnavailable,
)
from ..domain.models import CalendarBusyBlock, Reservation, Subject, TimeRange


logger = logging.getLogger(__name__)


class ExternalBusySource:
    """
    Wraps an ``ExternalCalendarAdapter`` with credentials handling and a timeout.

    Each call obtains fresh credentials, and on ``CredentialsExpired`` refreshes
    once more and retries, all inside a single ``timeout_seconds`` budget.
    """

    def __init__(self, adapter: ExternalCalendarAdapter | None, timeout_seconds: float = 5.0):
        self.adapter = adapter
        self.timeout_seconds = timeout_seconds

    def enabled_for(self, subject: Subject) -> bool:
        return self.adapter is not None and subject.calendar_provider != "none"

    async def fetch(self, subject: Subject, window: TimeRange) -> List[CalendarBusyBlock]:
        """
        Fetch external busy blocks.

        Raises:
            ExternalCalendarUnavailable: On timeout, auth failure or provider error
        """
        if not self.enabled_for(subject):
            return []
        return await self._bounded(self._fetch(subject.id, window), f"fetching busy blocks for {subject.id}")

    async def fetch_or_degrade(self, subject: Subject, window: TimeRange) -> Tuple[List[CalendarBusyBlock], bool]:
        """
        Fail-open variant: returns ``(blocks, degraded)``.

        A failing external calendar yields no blocks and ``degraded=True``.
        """
        try:
            return await self.fetch(subject, window), False
        except CalendarAPIError as exc:
            logger.warning(
                "External calendar unavailable for %s, continuing without it: %s", subject.id, exc
            )
            return [], True

    async def push(self, subject: Subject, reservation: Reservation) -> str | None:
        """
        Mirror a reservation into the external calendar.

        Raises:
            ExternalCalendarUnavailable: On timeout, auth failure or provider error
        """
        if not self.enabled_for(subject):
            return None
        return await self._bounded(self._push(subject.id, reservation), f"syncing reservation {reservation.id}")

    async def _fetch(self, subject_id: str, window: TimeRange) -> List[CalendarBusyBlock]:
        credentials = await self._credentials(subject_id)
        try:
            return await self.adapter.fetch_busy_blocks(subject_id, window, credentials)
        except CredentialsExpired:
            logger.info("Access token for %s rejected, refreshing once", subject_id)
            credentials = await self._credentials(subject_id)
            return await self.adapter.fetch_busy_blocks(subject_id, window, credentials)

    async def _push(self, subject_id: str, reservation: Reservation) -> str:
        credentials = await self._credentials(subject_id)
        try:
            return await self.adapter.push_reservation(subject_id, reservation, credentials)
        except CredentialsExpired:
            credentials = await self._credentials(subject_id)
            return await self.adapter.push_reservation(subject_id, reservation, credentials)

    async def _credentials(self, subject_id: str) -> CalendarCredentials:
        try:
            return await self.adapter.refresh_credentials(subject_id)
        except AuthenticationError as exc:
            raise ExternalCalendarUnavailable(f"Calendar credentials unavailable: {exc}") from exc

    async def _bounded(self, coro, description: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ExternalCalendarUnavailable(
                f"Timed out after {self.timeout_seconds}s {description}"
            ) from exc
