"""
Configuration management using Pydantic models loaded from YAML.
"""

from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .domain.models import BusinessHours, Subject
from .domain.time_normalizer import AmbiguousTimePolicy, resolve_timezone
from .domain.exceptions import InvalidTimezone


class BookingSettings(BaseModel):
    """Defaults for slot listing, suggestions and idempotency."""
    default_duration_minutes: int = 120
    slot_step_minutes: int = 30
    buffer_minutes: int = 0
    suggestion_count: int = 3
    suggestion_step_minutes: int = 30
    idempotency_ttl_hours: int = 24
    ambiguous_time_policy: AmbiguousTimePolicy = AmbiguousTimePolicy.ASSUME_AM
    lookahead_days: int = 14
    max_listed_slots: int = 20

    @field_validator(
        "default_duration_minutes",
        "slot_step_minutes",
        "suggestion_step_minutes",
        "idempotency_ttl_hours",
        "lookahead_days",
        "max_listed_slots",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure counts and durations are positive."""
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("buffer_minutes")
    @classmethod
    def validate_buffer(cls, value: int) -> int:
        if value < 0:
            raise ValueError("buffer_minutes must not be negative")
        return value

    @field_validator("suggestion_count")
    @classmethod
    def validate_suggestion_count(cls, value: int) -> int:
        """Every conflict response carries at least one suggestion."""
        if value < 1:
            raise ValueError("suggestion_count must be at least 1")
        return value


class RetrySettings(BaseModel):
    """Backoff for transient storage failures."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    factor: float = 2.0

    @model_validator(mode="after")
    def validate_schedule(self) -> "RetrySettings":
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.factor < 1:
            raise ValueError("base_delay_seconds must be >= 0 and factor >= 1")
        return self


class CalendarSettings(BaseModel):
    """External calendar provider and its credentials."""
    provider: Literal["none", "mock", "google", "graph"] = "none"
    timeout_seconds: float = 5.0
    google_client_id: str = ""
    google_client_secret: str = ""
    graph_client_id: str = ""
    graph_tenant_id: str = ""
    graph_client_secret: str = ""
    mock_data_file: Optional[Path] = None

    @model_validator(mode="after")
    def validate_provider_credentials(self) -> "CalendarSettings":
        """Ensure the selected provider has what it needs to authenticate."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be greater than zero")
        if self.provider == "google" and not (self.google_client_id and self.google_client_secret):
            raise ValueError("google provider requires google_client_id and google_client_secret")
        if self.provider == "graph" and not (
            self.graph_client_id and self.graph_tenant_id and self.graph_client_secret
        ):
            raise ValueError(
                "graph provider requires graph_client_id, graph_tenant_id and graph_client_secret"
            )
        return self


class SubjectConfig(BaseModel):
    """A bookable subject (service provider)."""
    id: str
    name: str
    timezone: Optional[str] = None  # Falls back to AppConfig.timezone
    calendar_id: str = "primary"
    calendar_enabled: bool = True
    business_hours: Dict[str, List[List[str]]] = Field(default_factory=dict)

    @field_validator("business_hours")
    @classmethod
    def validate_business_hours(cls, value: Dict[str, List[List[str]]]) -> Dict[str, List[List[str]]]:
        """Parse once so broken hours fail at load time."""
        BusinessHours.from_mapping(value)
        return value

    def to_subject(self, default_timezone: str, provider: str = "none") -> Subject:
        return Subject(
            id=self.id,
            name=self.name,
            timezone=self.timezone or default_timezone,
            business_hours=BusinessHours.from_mapping(self.business_hours),
            calendar_provider=provider if self.calendar_enabled else "none",
            calendar_id=self.calendar_id,
        )


class AppConfig(BaseModel):
    """Application configuration."""
    timezone: str = "America/New_York"
    booking: BookingSettings = Field(default_factory=BookingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    calendar: CalendarSettings = Field(default_factory=CalendarSettings)
    subjects: List[SubjectConfig] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            return resolve_timezone(value)
        except InvalidTimezone as exc:
            raise ValueError(str(exc)) from exc

    @model_validator(mode="after")
    def validate_subjects(self) -> "AppConfig":
        """Ensure subject ids are unique and subject timezones exist."""
        seen: set[str] = set()
        for subject in self.subjects:
            if subject.id in seen:
                raise ValueError(f"Duplicate subject id: {subject.id}")
            seen.add(subject.id)
            if subject.timezone is not None:
                try:
                    resolve_timezone(subject.timezone)
                except InvalidTimezone as exc:
                    raise ValueError(f"Subject {subject.id}: {exc}") from exc
        return self

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        try:
            return cls(**data)
        except ValidationError as exc:
            raise ValueError(f"Invalid configuration in {config_path}:\n{exc}") from exc

    def build_subjects(self) -> List[Subject]:
        return [s.to_subject(self.timezone, self.calendar.provider) for s in self.subjects]

    def find_subject(self, subject_id: str) -> SubjectConfig | None:
        """Find a subject by id (case-insensitive)."""
        for subject in self.subjects:
            if subject.id.lower() == subject_id.lower():
                return subject
        return None


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of bookingengine/)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path
