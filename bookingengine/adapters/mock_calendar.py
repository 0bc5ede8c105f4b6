"""
Mock external calendar for local runs and tests without provider credentials.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import pendulum

from ..domain.models import BusyOrigin, CalendarBusyBlock, Reservation, TimeRange
from .calendar_adapter import CalendarCredentials


logger = logging.getLogger(__name__)


class MockCalendarAdapter:
    """
    Adapter that serves busy blocks from a JSON file or an in-memory list.

    Event format::

        [{"subjectId": "det-1", "start": "2024-11-25T10:00:00-05:00",
          "end": "2024-11-25T11:00:00-05:00", "title": "Dentist"}]

    Pushed reservations are appended to ``pushed`` so tests can inspect them.
    """

    def __init__(self, events: List[Dict[str, Any]] | None = None, data_file: Path | None = None):
        self.events: List[Dict[str, Any]] = list(events or [])
        self.pushed: List[Reservation] = []
        if data_file is not None:
            self._load_calendar_data(data_file)

    def _load_calendar_data(self, data_file: Path) -> None:
        """Load mock calendar data from a JSON file."""
        if not data_file.exists():
            logger.warning("Mock calendar file %s not found, starting empty", data_file)
            return
        with open(data_file, "r", encoding="utf-8") as f:
            self.events.extend(json.load(f))

    async def refresh_credentials(self, subject_id: str) -> CalendarCredentials:
        return CalendarCredentials(subject_id=subject_id, access_token="mock_access_token")

    async def fetch_busy_blocks(
        self,
        subject_id: str,
        window: TimeRange,
        credentials: CalendarCredentials,
    ) -> List[CalendarBusyBlock]:
        blocks: List[CalendarBusyBlock] = []

        for event in self.events:
            if event.get("subjectId") != subject_id:
                continue
            try:
                interval = TimeRange(
                    start=pendulum.parse(event["start"]).in_timezone("UTC"),
                    end=pendulum.parse(event["end"]).in_timezone("UTC"),
                )
            except (KeyError, ValueError) as e:
                logger.warning("Skipping invalid mock event %s: %s", event, e)
                continue
            if interval.overlaps(window):
                blocks.append(
                    CalendarBusyBlock(
                        interval=interval,
                        origin=BusyOrigin.EXTERNAL,
                        label=event.get("title", ""),
                    )
                )

        return blocks

    async def push_reservation(
        self,
        subject_id: str,
        reservation: Reservation,
        credentials: CalendarCredentials,
    ) -> str:
        self.pushed.append(reservation)
        return f"mock-event-{reservation.id}"
