"""
Tests for the BookingCoordinator: idempotent commit, races, retries and sync.
"""

import asyncio

import pendulum
import pytest

from bookingengine.adapters.google_calendar import GoogleCalendarAdapter
from bookingengine.adapters.memory_store import InMemoryReservationStore
from bookingengine.adapters.mock_calendar import MockCalendarAdapter
from bookingengine.domain.exceptions import (
    ExternalCalendarUnavailable,
    InvalidStatusTransition,
    TransientStorageError,
)
from bookingengine.domain.models import (
    BusinessHours,
    Reservation,
    ReservationStatus,
    Subject,
    TimeRange,
)
from bookingengine.domain.outcomes import BookingConfirmed, BookingConflict
from bookingengine.services.booking_coordinator import (
    BookingCoordinator,
    BookingPhase,
    scoped_idempotency_key,
)
from bookingengine.services.external_calendar import ExternalBusySource
from bookingengine.services.retry import RetryPolicy
from bookingengine.services.schemas import BookingRequest


NY = "America/New_York"
SUNDAY_NOON = pendulum.datetime(2024, 11, 24, 12, 0, tz=NY)


class RecordingSleep:
    """Async sleep stub that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FlakyStore(InMemoryReservationStore):
    """Store whose commit fails transiently ``failures`` times."""

    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.commit_calls = 0

    async def create_if_no_overlap(self, reservation, idempotency_record=None):
        self.commit_calls += 1
        if self.commit_calls <= self.failures:
            raise TransientStorageError("connection reset")
        return await super().create_if_no_overlap(reservation, idempotency_record)


class TokenlessSession:
    """HTTP session whose every response is a 200 without an access token."""

    class Response:
        status_code = 200

        def json(self):
            return {"token_type": "Bearer"}

        def raise_for_status(self):
            pass

    def __init__(self):
        self.calls = 0

    def post(self, url, **kwargs):
        self.calls += 1
        return self.Response()

    def request(self, method, url, **kwargs):
        self.calls += 1
        return self.Response()


class StaticCredentialStore:
    def get_refresh_token(self, provider, subject_id):
        return "refresh"


class BrokenSyncAdapter(MockCalendarAdapter):
    """Calendar that serves busy blocks but rejects every event insert."""

    def __init__(self):
        super().__init__()
        self.push_attempts = 0

    async def push_reservation(self, subject_id, reservation, credentials):
        self.push_attempts += 1
        raise ExternalCalendarUnavailable("insert failed")


def _subject(provider: str = "none") -> Subject:
    weekdays = {day: [["09:00", "18:00"]] for day in ("monday", "tuesday", "wednesday", "thursday", "friday")}
    return Subject(
        id="det-1",
        name="Sam's Detailing",
        timezone=NY,
        business_hours=BusinessHours.from_mapping(weekdays),
        calendar_provider=provider,
    )


def _existing(start_hour: int, end_hour: int, reservation_id: str = "existing", name: str = "Jordan") -> Reservation:
    return Reservation(
        id=reservation_id,
        subject_id="det-1",
        interval=TimeRange(
            start=pendulum.datetime(2024, 11, 25, start_hour, tz=NY).in_timezone("UTC"),
            end=pendulum.datetime(2024, 11, 25, end_hour, tz=NY).in_timezone("UTC"),
        ),
        customer_name=name,
    )


def _request(**overrides) -> BookingRequest:
    payload = {
        "subjectId": "det-1",
        "date": "2024-11-25",
        "time": "3 pm",
        "durationMinutes": 120,
        "tz": NY,
        "idempotencyKey": "key-1",
        "customerName": "Alex",
    }
    payload.update(overrides)
    return BookingRequest.model_validate(payload)


def _coordinator(store=None, reservations=(), **kwargs) -> BookingCoordinator:
    store = store or InMemoryReservationStore(subjects=[_subject()], reservations=reservations)
    kwargs.setdefault("sleep", RecordingSleep())
    return BookingCoordinator(store, clock=lambda: SUNDAY_NOON, **kwargs)


class TestBook:
    """Tests for single booking attempts."""

    def test_books_free_slot(self):
        store = InMemoryReservationStore(subjects=[_subject()])
        coordinator = _coordinator(store, id_factory=lambda: "booking-1")

        outcome = asyncio.run(coordinator.book(_request()))

        assert isinstance(outcome, BookingConfirmed)
        assert outcome.booking_id == "booking-1"
        assert pendulum.parse(outcome.start_utc_iso) == pendulum.datetime(2024, 11, 25, 20, tz="UTC")
        assert pendulum.parse(outcome.end_utc_iso) == pendulum.datetime(2024, 11, 25, 22, tz="UTC")

        reservations = store.all_reservations()
        assert len(reservations) == 1
        assert reservations[0].status is ReservationStatus.CONFIRMED
        assert reservations[0].customer_name == "Alex"
        assert reservations[0].source == "AI"

    def test_tomorrow_at_ten(self):
        store = InMemoryReservationStore(subjects=[_subject()])

        outcome = asyncio.run(_coordinator(store).book(_request(date="tomorrow", time="10")))

        assert pendulum.parse(outcome.start_utc_iso) == pendulum.datetime(2024, 11, 25, 10, tz=NY)

    def test_conflict_with_suggestions(self):
        """Existing 14:00-16:00, requested 15:00-17:00."""
        store = InMemoryReservationStore(subjects=[_subject()], reservations=[_existing(14, 16)])

        outcome = asyncio.run(_coordinator(store).book(_request()))

        assert isinstance(outcome, BookingConflict)
        body = outcome.to_response()
        assert body["ok"] is False
        assert body["reason"] == "CONFLICT"
        assert "Jordan" in body["message"]
        assert body["conflicts"] == [{"label": "Jordan", "time": "2:00 PM – 4:00 PM", "type": "booking"}]
        assert [s["startLocal"] for s in body["suggestions"]] == ["4:00 PM", "4:30 PM", "5:00 PM"]
        assert pendulum.parse(body["suggestions"][0]["startISO"]) == pendulum.datetime(2024, 11, 25, 16, tz=NY)
        assert len(store.all_reservations()) == 1

    def test_touching_booking_is_accepted(self):
        store = InMemoryReservationStore(subjects=[_subject()], reservations=[_existing(14, 16)])

        outcome = asyncio.run(_coordinator(store).book(_request(time="4 pm")))

        assert isinstance(outcome, BookingConfirmed)

    def test_suggestions_follow_latest_conflict(self):
        store = InMemoryReservationStore(
            subjects=[_subject()],
            reservations=[_existing(14, 16, "a", "First"), _existing(16, 17, "b", "Second")],
        )

        outcome = asyncio.run(_coordinator(store).book(_request(durationMinutes=180)))

        assert [c.label for c in outcome.conflicts] == ["First", "Second"]
        assert outcome.suggestions[0].start_local == "5:00 PM"

    def test_phases_in_order(self):
        phases = []

        async def listener(phase, request):
            phases.append(phase)

        coordinator = _coordinator(phase_listener=listener)
        asyncio.run(coordinator.book(_request()))
        asyncio.run(coordinator.book(_request()))

        assert phases == [
            BookingPhase.RECEIVED,
            BookingPhase.NORMALIZED,
            BookingPhase.ADVISORY_CHECK,
            BookingPhase.COMMIT,
            BookingPhase.COMMITTED,
            BookingPhase.RECEIVED,
            BookingPhase.REPLAYED,
        ]


class TestIdempotency:
    """Tests for idempotent replay."""

    def test_same_key_replays_success(self):
        store = InMemoryReservationStore(subjects=[_subject()])
        coordinator = _coordinator(store)

        first = asyncio.run(coordinator.book(_request()))
        second = asyncio.run(coordinator.book(_request()))

        assert first == second
        assert len(store.all_reservations()) == 1

    def test_same_key_replays_conflict_even_after_slot_frees(self):
        store = InMemoryReservationStore(subjects=[_subject()], reservations=[_existing(14, 16)])
        coordinator = _coordinator(store)

        first = asyncio.run(coordinator.book(_request()))
        asyncio.run(coordinator.update_status("existing", ReservationStatus.CANCELLED))
        second = asyncio.run(coordinator.book(_request()))

        assert isinstance(first, BookingConflict)
        assert second == first

    def test_new_key_same_slot_conflicts(self):
        store = InMemoryReservationStore(subjects=[_subject()])
        coordinator = _coordinator(store)

        asyncio.run(coordinator.book(_request(idempotencyKey="a")))
        outcome = asyncio.run(coordinator.book(_request(idempotencyKey="b", customerName="Blake")))

        assert isinstance(outcome, BookingConflict)
        assert outcome.conflicts[0].label == "Alex"
        assert outcome.suggestions

    def test_keys_are_scoped_per_subject(self):
        assert scoped_idempotency_key("det-1", "k") != scoped_idempotency_key("det-2", "k")
        assert scoped_idempotency_key("det-1", "k") == scoped_idempotency_key("det-1", "k")

    def test_expired_key_is_a_new_request(self):
        store = InMemoryReservationStore(subjects=[_subject()])
        now = [SUNDAY_NOON]
        coordinator = BookingCoordinator(store, clock=lambda: now[0], idempotency_ttl_hours=1)

        first = asyncio.run(coordinator.book(_request()))
        now[0] = SUNDAY_NOON.add(hours=2)
        second = asyncio.run(coordinator.book(_request()))

        assert isinstance(first, BookingConfirmed)
        # The slot is now taken by the first booking
        assert isinstance(second, BookingConflict)


class TestConcurrency:
    """Races between the advisory check and the commit."""

    @staticmethod
    def _pause_at_commit(count):
        arrived = []
        released = asyncio.Event()

        async def listener(phase, request):
            if phase is BookingPhase.COMMIT:
                arrived.append(request.idempotency_key)
                if len(arrived) == count:
                    released.set()
                await released.wait()

        return listener

    def test_concurrent_overlapping_requests(self):
        """Both pass the advisory check; exactly one commits."""
        store = InMemoryReservationStore(subjects=[_subject()])

        async def race():
            coordinator = _coordinator(store, phase_listener=self._pause_at_commit(2))
            return await asyncio.gather(
                coordinator.book(_request(idempotencyKey="a", customerName="Alex")),
                coordinator.book(_request(idempotencyKey="b", time="4 pm", customerName="Blake")),
            )

        outcomes = asyncio.run(race())

        confirmed = [o for o in outcomes if isinstance(o, BookingConfirmed)]
        conflicts = [o for o in outcomes if isinstance(o, BookingConflict)]
        assert len(confirmed) == 1
        assert len(conflicts) == 1
        assert conflicts[0].conflicts
        assert conflicts[0].suggestions
        assert len(store.all_reservations()) == 1

    def test_concurrent_same_key(self):
        """Two identical in-flight requests create one booking and get identical answers."""
        store = InMemoryReservationStore(subjects=[_subject()])

        async def race():
            coordinator = _coordinator(store, phase_listener=self._pause_at_commit(2))
            return await asyncio.gather(coordinator.book(_request()), coordinator.book(_request()))

        first, second = asyncio.run(race())

        assert isinstance(first, BookingConfirmed)
        assert first == second
        assert len(store.all_reservations()) == 1

    def test_concurrent_same_key_conflict(self):
        store = InMemoryReservationStore(subjects=[_subject()], reservations=[_existing(14, 16)])

        async def race():
            coordinator = _coordinator(store)
            return await asyncio.gather(coordinator.book(_request()), coordinator.book(_request()))

        first, second = asyncio.run(race())

        assert isinstance(first, BookingConflict)
        assert first == second

    def test_no_double_booking_under_load(self):
        store = InMemoryReservationStore(subjects=[_subject()])

        async def race():
            coordinator = _coordinator(store, phase_listener=self._pause_at_commit(6))
            requests = [
                _request(idempotencyKey=f"k{i}", time=time)
                for i, time in enumerate(["2 pm", "2:30 pm", "3 pm", "3:30 pm", "4 pm", "4:30 pm"])
            ]
            return await asyncio.gather(*(coordinator.book(r) for r in requests))

        asyncio.run(race())

        reservations = store.all_reservations()
        for index, reservation in enumerate(reservations):
            for other in reservations[index + 1:]:
                assert not reservation.interval.overlaps(other.interval)


class TestRetry:
    """Tests for book_with_retry."""

    def test_retries_transient_storage_errors(self):
        store = FlakyStore(failures=2, subjects=[_subject()])
        sleep = RecordingSleep()
        coordinator = _coordinator(store, sleep=sleep)

        outcome = asyncio.run(coordinator.book_with_retry(_request()))

        assert isinstance(outcome, BookingConfirmed)
        assert store.commit_calls == 3
        assert sleep.delays == [1.0, 2.0]
        assert len(store.all_reservations()) == 1

    def test_gives_up_after_three_attempts(self):
        store = FlakyStore(failures=5, subjects=[_subject()])
        coordinator = _coordinator(store)

        with pytest.raises(TransientStorageError):
            asyncio.run(coordinator.book_with_retry(_request()))

        assert store.commit_calls == 3
        assert store.all_reservations() == []

    def test_conflicts_are_not_retried(self):
        sleep = RecordingSleep()
        coordinator = _coordinator(reservations=[_existing(14, 16)], sleep=sleep)

        outcome = asyncio.run(coordinator.book_with_retry(_request()))

        assert isinstance(outcome, BookingConflict)
        assert sleep.delays == []

    def test_custom_policy(self):
        store = FlakyStore(failures=1, subjects=[_subject()])
        sleep = RecordingSleep()
        coordinator = _coordinator(store, sleep=sleep, retry_policy=RetryPolicy(max_attempts=2, base_delay=0.1))

        asyncio.run(coordinator.book_with_retry(_request()))

        assert sleep.delays == [0.1]


class TestHandleBookingRequest:
    """Tests for the payload-to-response mapping."""

    def _payload(self, **overrides):
        payload = {
            "subjectId": "det-1",
            "date": "2024-11-25",
            "time": "3 pm",
            "durationMinutes": 120,
            "timezone": NY,
            "idempotencyKey": "key-1",
        }
        payload.update(overrides)
        return payload

    def test_created(self):
        status, body = asyncio.run(_coordinator().handle_booking_request(self._payload()))

        assert status == 201
        assert body["ok"] is True
        assert set(body) == {"ok", "bookingId", "startUtcISO", "endUtcISO"}

    def test_conflict(self):
        coordinator = _coordinator(reservations=[_existing(14, 16)])

        status, body = asyncio.run(coordinator.handle_booking_request(self._payload()))

        assert status == 409
        assert body["reason"] == "CONFLICT"
        assert len(body["suggestions"]) == 3

    @pytest.mark.parametrize(
        "overrides",
        [
            {"time": "25:00"},
            {"date": "someday"},
            {"timezone": "Nowhere/Land"},
            {"durationMinutes": 0},
            {"idempotencyKey": ""},
        ],
    )
    def test_invalid_input(self, overrides):
        status, body = asyncio.run(_coordinator().handle_booking_request(self._payload(**overrides)))

        assert status == 400
        assert body == {"ok": False, "reason": "INVALID_INPUT", "message": body["message"]}
        assert body["message"]

    def test_missing_fields(self):
        status, body = asyncio.run(_coordinator().handle_booking_request({"subjectId": "det-1"}))

        assert status == 400
        assert "idempotencyKey" in body["message"]

    def test_unknown_subject(self):
        status, body = asyncio.run(_coordinator().handle_booking_request(self._payload(subjectId="nobody")))

        assert status == 404
        assert body["reason"] == "SUBJECT_NOT_FOUND"

    def test_storage_unavailable(self):
        store = FlakyStore(failures=10, subjects=[_subject()])

        status, body = asyncio.run(_coordinator(store).handle_booking_request(self._payload()))

        assert status == 503
        assert body["reason"] == "UNAVAILABLE"

    def test_malformed_calendar_response_does_not_block_booking(self):
        session = TokenlessSession()
        adapter = GoogleCalendarAdapter(
            client_id="client",
            client_secret="secret",
            credential_store=StaticCredentialStore(),
            session=session,
        )
        store = InMemoryReservationStore(subjects=[_subject("google")])
        coordinator = _coordinator(store, external=ExternalBusySource(adapter))

        async def run():
            result = await coordinator.handle_booking_request(self._payload())
            await coordinator.wait_for_sync()
            return result

        status, body = asyncio.run(run())

        assert status == 201
        assert body["ok"] is True
        assert session.calls > 0
        assert [r.id for r in store.all_reservations()] == [body["bookingId"]]

    def test_failed_attempt_leaves_key_reusable(self):
        store = FlakyStore(failures=3, subjects=[_subject()])
        coordinator = _coordinator(store)

        first_status, _ = asyncio.run(coordinator.handle_booking_request(self._payload()))
        second_status, _ = asyncio.run(coordinator.handle_booking_request(self._payload()))

        assert first_status == 503
        assert second_status == 201


class TestCalendarSync:
    """Tests for best-effort external calendar sync."""

    def test_pushes_committed_reservation(self):
        adapter = MockCalendarAdapter()
        store = InMemoryReservationStore(subjects=[_subject("mock")])
        coordinator = _coordinator(store, external=ExternalBusySource(adapter))

        async def run():
            outcome = await coordinator.book(_request())
            await coordinator.wait_for_sync()
            return outcome

        outcome = asyncio.run(run())

        assert [r.id for r in adapter.pushed] == [outcome.booking_id]

    def test_sync_failure_keeps_booking(self):
        adapter = BrokenSyncAdapter()
        store = InMemoryReservationStore(subjects=[_subject("mock")])
        sleep = RecordingSleep()
        coordinator = _coordinator(store, external=ExternalBusySource(adapter), sleep=sleep)

        async def run():
            outcome = await coordinator.book(_request())
            await coordinator.wait_for_sync()
            return outcome

        outcome = asyncio.run(run())

        assert isinstance(outcome, BookingConfirmed)
        assert adapter.push_attempts == 3
        assert sleep.delays == [1.0, 2.0]
        assert [r.id for r in store.all_reservations()] == [outcome.booking_id]

    def test_no_sync_without_calendar(self):
        adapter = MockCalendarAdapter()
        coordinator = _coordinator(external=ExternalBusySource(adapter))

        async def run():
            await coordinator.book(_request())
            await coordinator.wait_for_sync()

        asyncio.run(run())

        assert adapter.pushed == []


class TestUpdateStatus:
    """Tests for reservation lifecycle changes."""

    def test_cancel_frees_slot(self):
        store = InMemoryReservationStore(subjects=[_subject()], reservations=[_existing(14, 16)])
        coordinator = _coordinator(store)

        cancelled = asyncio.run(coordinator.update_status("existing", ReservationStatus.CANCELLED))
        outcome = asyncio.run(coordinator.book(_request()))

        assert cancelled.status is ReservationStatus.CANCELLED
        assert isinstance(outcome, BookingConfirmed)

    def test_invalid_transition(self):
        store = InMemoryReservationStore(subjects=[_subject()], reservations=[_existing(14, 16)])
        coordinator = _coordinator(store)
        asyncio.run(coordinator.update_status("existing", ReservationStatus.CANCELLED))

        with pytest.raises(InvalidStatusTransition):
            asyncio.run(coordinator.update_status("existing", ReservationStatus.CONFIRMED))
