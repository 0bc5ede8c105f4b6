"""
Alternative slot suggestions offered after a conflict.
"""

from typing import List

from pendulum import DateTime

from .models import SlotSuggestion, TimeRange


class SuggestionGenerator:
    """
    Proposes ``count`` slots spaced ``step_minutes`` apart, starting at the end
    of the latest conflicting interval.

    Suggestions are not checked against business hours or further conflicts.
    A suggestion the caller accepts goes through the normal booking path,
    which performs the authoritative check.
    """

    def __init__(self, count: int = 3, step_minutes: int = 30):
        if count < 1:
            raise ValueError("count must be at least 1")
        if step_minutes <= 0:
            raise ValueError("step_minutes must be greater than zero")
        self.count = count
        self.step_minutes = step_minutes

    def suggest(
        self,
        conflict_end: DateTime,
        duration_minutes: int,
        timezone: str,
        count: int | None = None,
    ) -> List[SlotSuggestion]:
        suggestions: List[SlotSuggestion] = []
        anchor = conflict_end.in_timezone(timezone)

        for index in range(count if count is not None else self.count):
            start = anchor.add(minutes=index * self.step_minutes)
            end = start.add(minutes=duration_minutes)
            suggestions.append(
                SlotSuggestion(
                    interval=TimeRange(start=start.in_timezone("UTC"), end=end.in_timezone("UTC")),
                    local_label=(
                        f"{start.format('ddd, MMM D')} {start.format('h:mm A')} – "
                        f"{end.format('h:mm A')} {timezone}"
                    ),
                    start_local=start.format("h:mm A"),
                )
            )

        return suggestions
