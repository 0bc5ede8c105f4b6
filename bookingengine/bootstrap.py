"""
Builds the engine's object graph from an ``AppConfig``.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .adapters.calendar_adapter import ExternalCalendarAdapter
from .adapters.credential_store import CredentialStore
from .adapters.google_calendar import GoogleCalendarAdapter
from .adapters.graph_calendar import GraphCalendarAdapter
from .adapters.memory_store import InMemoryReservationStore, load_reservations_file
from .adapters.mock_calendar import MockCalendarAdapter
from .config import AppConfig
from .domain.models import Reservation
from .domain.suggestions import SuggestionGenerator
from .domain.time_normalizer import TimeNormalizer
from .services.availability import AvailabilityComputer
from .services.booking_coordinator import BookingCoordinator
from .services.conflict_detector import ConflictDetector
from .services.external_calendar import ExternalBusySource
from .services.retry import RetryPolicy
from .services.storage import ReservationStore


logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """The wired services sharing one store and one external calendar source."""
    config: AppConfig
    store: ReservationStore
    normalizer: TimeNormalizer
    availability: AvailabilityComputer
    detector: ConflictDetector
    coordinator: BookingCoordinator


def build_calendar_adapter(
    config: AppConfig,
    credential_store: CredentialStore | None = None,
) -> ExternalCalendarAdapter | None:
    """
    Create the adapter for ``config.calendar.provider``.

    Returns None when no provider is configured.
    """
    settings = config.calendar
    calendar_ids = {subject.id: subject.calendar_id for subject in config.subjects}

    if settings.provider == "none":
        return None

    if settings.provider == "mock":
        return MockCalendarAdapter(data_file=settings.mock_data_file)

    credential_store = credential_store or CredentialStore()
    if credential_store.insecure_storage_warning:
        logger.warning(credential_store.insecure_storage_warning)

    if settings.provider == "google":
        return GoogleCalendarAdapter(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            credential_store=credential_store,
            calendar_ids=calendar_ids,
        )

    return GraphCalendarAdapter(
        client_id=settings.graph_client_id,
        tenant_id=settings.graph_tenant_id,
        client_secret=settings.graph_client_secret,
        credential_store=credential_store,
        calendar_ids=calendar_ids,
    )


def build_engine(
    config: AppConfig,
    reservations: Iterable[Reservation] = (),
    store: ReservationStore | None = None,
    adapter: ExternalCalendarAdapter | None = None,
    **coordinator_options,
) -> Engine:
    """
    Wire store, external calendar and services together.

    Args:
        config: Loaded configuration
        reservations: Seed reservations for the in-memory store
        store: Use this store instead of a fresh in-memory one
        adapter: Use this calendar adapter instead of building one from config
        coordinator_options: Passed through to BookingCoordinator (clock, sleep, ...)
    """
    settings = config.booking
    store = store or InMemoryReservationStore(
        subjects=config.build_subjects(),
        reservations=reservations,
    )
    if adapter is None:
        adapter = build_calendar_adapter(config)
    external = ExternalBusySource(adapter, timeout_seconds=config.calendar.timeout_seconds)

    clock_options = {"clock": coordinator_options["clock"]} if "clock" in coordinator_options else {}
    normalizer = TimeNormalizer(ambiguous_time_policy=settings.ambiguous_time_policy, **clock_options)
    detector = ConflictDetector(store, external)
    availability = AvailabilityComputer(
        store,
        external,
        step_minutes=settings.slot_step_minutes,
        **clock_options,
    )
    coordinator = BookingCoordinator(
        store,
        normalizer=normalizer,
        detector=detector,
        suggestions=SuggestionGenerator(
            count=settings.suggestion_count,
            step_minutes=settings.suggestion_step_minutes,
        ),
        external=external,
        retry_policy=RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay=config.retry.base_delay_seconds,
            factor=config.retry.factor,
        ),
        idempotency_ttl_hours=settings.idempotency_ttl_hours,
        **coordinator_options,
    )

    return Engine(
        config=config,
        store=store,
        normalizer=normalizer,
        availability=availability,
        detector=detector,
        coordinator=coordinator,
    )


def load_seed_reservations(path: Path | None) -> list:
    """Read a reservations JSON file, or nothing when no path is given."""
    if path is None:
        return []
    return load_reservations_file(path)
