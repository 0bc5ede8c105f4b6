"""
Google Calendar adapter (OAuth token refresh, FreeBusy, event insert).
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List

import pendulum
import requests

from ..domain.exceptions import (
    AuthenticationError,
    CredentialsExpired,
    ExternalCalendarUnavailable,
)
from ..domain.models import BusyOrigin, CalendarBusyBlock, Reservation, TimeRange
from .calendar_adapter import CalendarCredentials
from .credential_store import CredentialStore


logger = logging.getLogger(__name__)

PROVIDER = "google"


class GoogleCalendarAdapter:
    """
    ExternalCalendarAdapter backed by Google Calendar API v3.

    Blocking ``requests`` calls run in the default thread pool so the event
    loop's timeouts stay effective.
    """

    TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
    CALENDAR_API_ENDPOINT = "https://www.googleapis.com/calendar/v3"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        credential_store: CredentialStore,
        calendar_ids: Dict[str, str] | None = None,
        http_timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        """
        Initialize the adapter.

        Args:
            client_id: OAuth client id
            client_secret: OAuth client secret
            credential_store: Source of per-subject refresh tokens
            calendar_ids: Subject id -> calendar id (default "primary")
            http_timeout: Per-request HTTP timeout in seconds
            session: Optional requests session (tests inject one)
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.credential_store = credential_store
        self.calendar_ids = dict(calendar_ids or {})
        self.http_timeout = http_timeout
        self._session = session or requests.Session()

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a blocking HTTP call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    async def refresh_credentials(self, subject_id: str) -> CalendarCredentials:
        refresh_token = self.credential_store.get_refresh_token(PROVIDER, subject_id)
        if not refresh_token:
            raise AuthenticationError(f"No Google Calendar refresh token stored for {subject_id}")

        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._run_in_executor(
                self._session.post, self.TOKEN_ENDPOINT, data=payload, timeout=self.http_timeout
            )
        except requests.exceptions.RequestException as e:
            raise ExternalCalendarUnavailable(f"Failed to refresh Google token: {e}") from e

        if response.status_code in (400, 401):
            raise AuthenticationError(f"Google rejected the refresh token for {subject_id}")
        try:
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ExternalCalendarUnavailable(f"Failed to refresh Google token: {e}") from e

        try:
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ExternalCalendarUnavailable(f"Malformed Google token response: {e!r}") from e

        return CalendarCredentials(
            subject_id=subject_id,
            access_token=access_token,
            calendar_id=self.calendar_ids.get(subject_id, "primary"),
            expires_at=pendulum.now("UTC").add(seconds=expires_in),
        )

    async def fetch_busy_blocks(
        self,
        subject_id: str,
        window: TimeRange,
        credentials: CalendarCredentials,
    ) -> List[CalendarBusyBlock]:
        """
        Query the FreeBusy endpoint for the credential's calendar.

        Response format:
        {"calendars": {"primary": {"busy": [{"start": "...", "end": "..."}]}}}
        """
        body = {
            "timeMin": window.start.in_timezone("UTC").to_iso8601_string(),
            "timeMax": window.end.in_timezone("UTC").to_iso8601_string(),
            "items": [{"id": credentials.calendar_id}],
        }
        data = await self._request(
            "POST", f"{self.CALENDAR_API_ENDPOINT}/freeBusy", credentials, json=body
        )

        try:
            calendar = data.get("calendars", {}).get(credentials.calendar_id, {})
            errors = [error.get("reason", "unknown") for error in calendar.get("errors", [])]
            busy_items = list(calendar.get("busy", []))
        except (TypeError, AttributeError) as e:
            raise ExternalCalendarUnavailable(f"Malformed Google FreeBusy response: {e!r}") from e

        # e.g. notFound for a calendar the token cannot see
        if errors:
            reasons = ", ".join(map(str, errors))
            raise ExternalCalendarUnavailable(
                f"Google could not read calendar {credentials.calendar_id}: {reasons}"
            )

        blocks: List[CalendarBusyBlock] = []
        for item in busy_items:
            try:
                interval = TimeRange(
                    start=pendulum.parse(item["start"]).in_timezone("UTC"),
                    end=pendulum.parse(item["end"]).in_timezone("UTC"),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unparsable Google busy interval %s: %s", item, e)
                continue
            blocks.append(CalendarBusyBlock(interval=interval, origin=BusyOrigin.EXTERNAL))

        logger.debug("Google returned %d busy intervals for %s", len(blocks), subject_id)
        return blocks

    async def push_reservation(
        self,
        subject_id: str,
        reservation: Reservation,
        credentials: CalendarCredentials,
    ) -> str:
        body = {
            "summary": reservation.display_label,
            "description": _describe(reservation),
            "start": {"dateTime": reservation.interval.start.in_timezone("UTC").to_iso8601_string()},
            "end": {"dateTime": reservation.interval.end.in_timezone("UTC").to_iso8601_string()},
        }
        data = await self._request(
            "POST",
            f"{self.CALENDAR_API_ENDPOINT}/calendars/{credentials.calendar_id}/events",
            credentials,
            json=body,
        )
        try:
            event_id = data["id"]
        except (KeyError, TypeError) as e:
            raise ExternalCalendarUnavailable(f"Malformed Google event response: {e!r}") from e
        logger.info("Created Google event %s for reservation %s", event_id, reservation.id)
        return event_id

    async def _request(
        self,
        method: str,
        url: str,
        credentials: CalendarCredentials,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        headers = {**credentials.authorization_header, "Content-Type": "application/json"}
        try:
            response = await self._run_in_executor(
                self._session.request, method, url, headers=headers, timeout=self.http_timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise ExternalCalendarUnavailable(f"Google Calendar request failed: {e}") from e

        if response.status_code == 401:
            raise CredentialsExpired("Google Calendar access token expired")
        try:
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ExternalCalendarUnavailable(f"Google Calendar request failed: {e}") from e


def _describe(reservation: Reservation) -> str:
    lines = []
    if reservation.customer_name:
        lines.append(f"Customer: {reservation.customer_name}")
    if reservation.customer_phone:
        lines.append(f"Phone: {reservation.customer_phone}")
    for key, value in reservation.meta.items():
        lines.append(f"{key}: {value}")
    lines.append(f"Booking: {reservation.id}")
    return "\n".join(lines)
