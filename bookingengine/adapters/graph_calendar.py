"""
Microsoft Graph calendar adapter (Outlook / Microsoft 365).
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List

import msal
import pendulum
import requests
from pendulum import DateTime

from ..domain.exceptions import (
    AuthenticationError,
    CredentialsExpired,
    ExternalCalendarUnavailable,
)
from ..domain.models import BusyOrigin, CalendarBusyBlock, Reservation, TimeRange
from .calendar_adapter import CalendarCredentials
from .credential_store import CredentialStore


logger = logging.getLogger(__name__)

PROVIDER = "graph"

# Statuses that block the calendar
BUSY_STATUSES = {"busy", "tentative", "oof", "workingelsewhere"}


class GraphCalendarAdapter:
    """
    ExternalCalendarAdapter backed by Microsoft Graph.

    Uses the /calendar/getSchedule endpoint for free/busy information and
    MSAL to exchange each subject's stored refresh token for an access token.
    """

    GRAPH_API_ENDPOINT = "https://graph.microsoft.com/v1.0"
    SCOPES = ["Calendars.ReadWrite"]

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        client_secret: str,
        credential_store: CredentialStore,
        calendar_ids: Dict[str, str] | None = None,
        http_timeout: float = 10.0,
        app: msal.ConfidentialClientApplication | None = None,
    ):
        """
        Initialize the adapter.

        Args:
            client_id: Azure AD application (client) ID
            tenant_id: Azure AD tenant ID
            client_secret: Application secret
            credential_store: Source of per-subject refresh tokens
            calendar_ids: Subject id -> mailbox address whose schedule is read
            http_timeout: Per-request HTTP timeout in seconds
            app: Optional pre-built MSAL application (tests inject one)
        """
        self.credential_store = credential_store
        self.calendar_ids = dict(calendar_ids or {})
        self.http_timeout = http_timeout
        self.app = app or msal.ConfidentialClientApplication(
            client_id=client_id,
            client_credential=client_secret,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
        )

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    async def refresh_credentials(self, subject_id: str) -> CalendarCredentials:
        refresh_token = self.credential_store.get_refresh_token(PROVIDER, subject_id)
        if not refresh_token:
            raise AuthenticationError(f"No Microsoft refresh token stored for {subject_id}")

        try:
            result = await self._run_in_executor(
                self.app.acquire_token_by_refresh_token, refresh_token, scopes=self.SCOPES
            )
        except requests.exceptions.RequestException as e:
            raise ExternalCalendarUnavailable(f"Failed to reach Microsoft identity platform: {e}") from e

        if not isinstance(result, dict):
            raise ExternalCalendarUnavailable(f"Malformed Microsoft token response: {type(result).__name__}")
        if "access_token" not in result:
            error = result.get("error_description", "Unknown error")
            raise AuthenticationError(f"Microsoft token refresh failed: {error}")

        # MSAL may rotate the refresh token
        if result.get("refresh_token") and result["refresh_token"] != refresh_token:
            self.credential_store.set_refresh_token(PROVIDER, subject_id, result["refresh_token"])

        try:
            expires_in = int(result.get("expires_in", 3600))
        except (TypeError, ValueError) as e:
            raise ExternalCalendarUnavailable(f"Malformed Microsoft token response: {e!r}") from e

        return CalendarCredentials(
            subject_id=subject_id,
            access_token=result["access_token"],
            calendar_id=self.calendar_ids.get(subject_id, subject_id),
            expires_at=pendulum.now("UTC").add(seconds=expires_in),
        )

    async def fetch_busy_blocks(
        self,
        subject_id: str,
        window: TimeRange,
        credentials: CalendarCredentials,
    ) -> List[CalendarBusyBlock]:
        url = f"{self.GRAPH_API_ENDPOINT}/me/calendar/getSchedule"
        payload = {
            "schedules": [credentials.calendar_id],
            "startTime": {
                "dateTime": window.start.in_timezone("UTC").format("YYYY-MM-DDTHH:mm:ss"),
                "timeZone": "UTC",
            },
            "endTime": {
                "dateTime": window.end.in_timezone("UTC").format("YYYY-MM-DDTHH:mm:ss"),
                "timeZone": "UTC",
            },
            "availabilityViewInterval": 30,
        }
        data = await self._request("POST", url, credentials, json=payload)
        try:
            return self._parse_schedule_response(data)
        except (TypeError, AttributeError) as e:
            raise ExternalCalendarUnavailable(f"Malformed Microsoft Graph schedule response: {e!r}") from e

    async def push_reservation(
        self,
        subject_id: str,
        reservation: Reservation,
        credentials: CalendarCredentials,
    ) -> str:
        body = {
            "subject": reservation.display_label,
            "body": {"contentType": "text", "content": f"Booking {reservation.id}"},
            "start": {
                "dateTime": reservation.interval.start.in_timezone("UTC").format("YYYY-MM-DDTHH:mm:ss"),
                "timeZone": "UTC",
            },
            "end": {
                "dateTime": reservation.interval.end.in_timezone("UTC").format("YYYY-MM-DDTHH:mm:ss"),
                "timeZone": "UTC",
            },
        }
        data = await self._request("POST", f"{self.GRAPH_API_ENDPOINT}/me/events", credentials, json=body)
        try:
            event_id = data["id"]
        except (KeyError, TypeError) as e:
            raise ExternalCalendarUnavailable(f"Malformed Microsoft Graph event response: {e!r}") from e
        logger.info("Created Graph event %s for reservation %s", event_id, reservation.id)
        return event_id

    def _parse_schedule_response(self, response_data: Dict[str, Any]) -> List[CalendarBusyBlock]:
        """
        Parse the getSchedule API response into busy blocks.

        Response format:
        {
            "value": [
                {
                    "scheduleId": "user@example.com",
                    "scheduleItems": [
                        {
                            "status": "busy",
                            "subject": "...",
                            "start": {"dateTime": "...", "timeZone": "UTC"},
                            "end": {"dateTime": "...", "timeZone": "UTC"}
                        }
                    ]
                }
            ]
        }
        """
        blocks: List[CalendarBusyBlock] = []

        for schedule in response_data.get("value", []):
            for item in schedule.get("scheduleItems", []):
                if item.get("status", "").lower() not in BUSY_STATUSES:
                    continue
                try:
                    interval = TimeRange(
                        start=self._parse_datetime(item["start"]),
                        end=self._parse_datetime(item["end"]),
                    )
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Could not parse schedule item: %s", e)
                    continue
                blocks.append(
                    CalendarBusyBlock(
                        interval=interval,
                        origin=BusyOrigin.EXTERNAL,
                        label=item.get("subject", ""),
                    )
                )

        return blocks

    @staticmethod
    def _parse_datetime(value: Dict[str, str]) -> DateTime:
        """Parse a Graph ``{"dateTime", "timeZone"}`` pair into UTC."""
        dt = pendulum.parse(value["dateTime"], tz=value.get("timeZone") or "UTC")
        if not isinstance(dt, DateTime):
            raise ValueError(f"Could not parse datetime: {value['dateTime']}")
        return dt.in_timezone("UTC")

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
                requests.request, method, url, headers=headers, timeout=self.http_timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise ExternalCalendarUnavailable(f"Microsoft Graph request failed: {e}") from e

        if response.status_code == 401:
            raise CredentialsExpired("Microsoft Graph access token expired")
        try:
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ExternalCalendarUnavailable(f"Microsoft Graph request failed: {e}") from e
