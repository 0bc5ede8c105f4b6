"""
Terminal booking outcomes, as stored against idempotency keys and returned to callers.
"""

from typing import Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _ResponseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_response(self) -> Dict[str, Any]:
        """Serialize with the camelCase field names of the wire format."""
        return self.model_dump(by_alias=True)


class ConflictEntry(_ResponseModel):
    """An existing item that clashes with the requested slot."""
    label: str
    time: str
    type: Literal["booking", "block", "external"] = "booking"


class SuggestionEntry(_ResponseModel):
    """An alternative start time offered after a conflict."""
    start_local: str = Field(alias="startLocal")
    start_iso: str = Field(alias="startISO")
    label: str = ""


class BookingConfirmed(_ResponseModel):
    ok: Literal[True] = True
    booking_id: str = Field(alias="bookingId")
    start_utc_iso: str = Field(alias="startUtcISO")
    end_utc_iso: str = Field(alias="endUtcISO")

    @property
    def http_status(self) -> int:
        return 201


class BookingConflict(_ResponseModel):
    ok: Literal[False] = False
    reason: Literal["CONFLICT"] = "CONFLICT"
    message: str = ""
    conflicts: List[ConflictEntry] = Field(default_factory=list)
    suggestions: List[SuggestionEntry] = Field(default_factory=list)

    @property
    def http_status(self) -> int:
        return 409


BookingOutcome = Union[BookingConfirmed, BookingConflict]


class ErrorResponse(_ResponseModel):
    """Non-terminal failures. Never stored against an idempotency key."""
    ok: Literal[False] = False
    reason: Literal["INVALID_INPUT", "SUBJECT_NOT_FOUND", "UNAVAILABLE"]
    message: str

    @property
    def http_status(self) -> int:
        return {"INVALID_INPUT": 400, "SUBJECT_NOT_FOUND": 404}.get(self.reason, 503)
