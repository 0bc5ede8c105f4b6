"""Pydantic model for incoming booking requests."""

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class BookingRequest(BaseModel):
    """Data collected from the caller (SMS/voice bot or web form)."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    subject_id: str = Field(alias="subjectId", min_length=1)
    date: str = Field(min_length=1)  # YYYY-MM-DD, "tomorrow", "friday", ...
    time: str = Field(min_length=1)  # "10", "10:30", "2 pm", ...
    duration_minutes: int = Field(default=120, alias="durationMinutes", gt=0, le=24 * 60)
    timezone: str = Field(default="America/New_York", alias="tz")
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=200)

    title: str = ""
    customer_name: str = Field(default="", alias="customerName")
    customer_phone: str = Field(default="", alias="customerPhone")
    source: str = "AI"
    meta: Dict[str, Any] = Field(default_factory=dict)
