"""Shared fixtures: in-memory database, fixed clocks and a recording calendar provider."""

import os

from cryptography.fernet import Fernet

# Must be set before nutrivault.config is imported
os.environ["SECRET_KEY"] = Fernet.generate_key().decode()
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
os.environ["SYNC_COOLDOWN_BACKEND"] = "memory"

import copy  # noqa: E402
from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from nutrivault import models, models_google_calendar, models_visit  # noqa: E402, F401
from nutrivault.auth import hash_api_token  # noqa: E402
from nutrivault.database import Base  # noqa: E402
from nutrivault.domain.calendar_sync.exceptions import (  # noqa: E402
    CalendarAccessError,
    EventNotFoundError,
)
from nutrivault.domain.calendar_sync.orchestrator import CalendarSyncOrchestrator  # noqa: E402
from nutrivault.domain.calendar_sync.service import CalendarSyncService  # noqa: E402
from nutrivault.domain.calendar_sync.trigger_gate import SyncTriggerGate  # noqa: E402
from nutrivault.domain.visits.repository import VisitRepository  # noqa: E402
from nutrivault.models import Patient, User  # noqa: E402
from nutrivault.models_google_calendar import GoogleCalendarIntegration  # noqa: E402
from nutrivault.rate_limiter import MemoryCooldownStore  # noqa: E402
from nutrivault.services.google_calendar_service import encrypt_token  # noqa: E402
from nutrivault.shared.time_utils import parse_rfc3339, to_rfc3339, utcnow  # noqa: E402

T0 = datetime(2026, 3, 2, 9, 0, 0)
API_TOKEN = "test-api-token"
MUTATING_CALLS = {"insert_event", "update_event", "delete_event"}


class FakeClock:
    """Naive-UTC clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Monotonic seconds for the cooldown store"""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeCalendarProvider:
    """
    In-memory Google Calendar with the GoogleCalendarClient coroutine API.
    Every call is recorded in `calls` as (method, argument).
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.events: dict = {}
        self.calendars = [
            {"id": "primary", "summary": "Cabinet", "primary": True, "accessRole": "owner"},
        ]
        self.calls: list = []
        self._failures: dict = {}
        self._next_id = 0
        self._version = 0

    # test controls

    def fail(self, method: str, error: Exception, times=None) -> None:
        """Make `method` raise `error`; times=None means until cleared"""
        self._failures[method] = [error, times]

    def clear_failures(self) -> None:
        self._failures.clear()

    def method_calls(self, method: str) -> list:
        return [arg for name, arg in self.calls if name == method]

    @property
    def mutating_calls(self) -> list:
        return [call for call in self.calls if call[0] in MUTATING_CALLS]

    def reset_calls(self) -> None:
        self.calls.clear()

    def edit_remotely(self, event_id: str, start: datetime = None, minutes: int = None, status: str = None):
        event = self.events[event_id]
        begin = start or parse_rfc3339(event["start"]["dateTime"])
        if minutes is None:
            minutes = int(
                (parse_rfc3339(event["end"]["dateTime"]) - parse_rfc3339(event["start"]["dateTime"])).total_seconds()
                // 60
            )
        event["start"]["dateTime"] = to_rfc3339(begin)
        event["end"]["dateTime"] = to_rfc3339(begin + timedelta(minutes=minutes))
        if status:
            event["extendedProperties"]["private"]["nutrivault_visit_status"] = status
        self._stamp(event)

    def delete_remotely(self, event_id: str) -> None:
        del self.events[event_id]

    def cancel_remotely(self, event_id: str) -> None:
        self.events[event_id]["status"] = "cancelled"
        self._stamp(self.events[event_id])

    # provider API

    def _record(self, method: str, arg=None) -> None:
        self.calls.append((method, arg))
        failure = self._failures.get(method)
        if failure:
            error, times = failure
            if times is not None:
                failure[1] = times - 1
                if failure[1] <= 0:
                    del self._failures[method]
            raise error

    def _stamp(self, event: dict) -> None:
        self._version += 1
        event["etag"] = f'"{self._version}"'
        event["updated"] = to_rfc3339(self.clock())

    async def list_events(self, since: datetime, single_events: bool = True) -> list:
        self._record("list_events", since)
        return [
            copy.deepcopy(event)
            for event in self.events.values()
            if parse_rfc3339(event["end"]["dateTime"]) > since
        ]

    async def get_event(self, event_id: str) -> dict:
        self._record("get_event", event_id)
        if event_id not in self.events:
            raise EventNotFoundError(f"Event {event_id} not found", 404)
        return copy.deepcopy(self.events[event_id])

    async def insert_event(self, body: dict) -> dict:
        self._record("insert_event", body)
        self._next_id += 1
        event = copy.deepcopy(body)
        event["id"] = f"evt{self._next_id}"
        event["status"] = "confirmed"
        self._stamp(event)
        self.events[event["id"]] = event
        return copy.deepcopy(event)

    async def update_event(self, event_id: str, body: dict) -> dict:
        self._record("update_event", event_id)
        if event_id not in self.events:
            raise EventNotFoundError(f"Event {event_id} not found", 404)
        event = copy.deepcopy(body)
        event["id"] = event_id
        event["status"] = "confirmed"
        self._stamp(event)
        self.events[event_id] = event
        return copy.deepcopy(event)

    async def delete_event(self, event_id: str) -> None:
        self._record("delete_event", event_id)
        if event_id not in self.events:
            raise EventNotFoundError(f"Event {event_id} not found", 410)
        del self.events[event_id]

    async def list_calendars(self) -> list:
        self._record("list_calendars")
        return copy.deepcopy(self.calendars)

    async def get_calendar(self, calendar_id: str) -> dict:
        self._record("get_calendar", calendar_id)
        for calendar in self.calendars:
            if calendar["id"] == calendar_id:
                return copy.deepcopy(calendar)
        raise CalendarAccessError(f"Calendar {calendar_id} not found or not shared", 404)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def provider(clock):
    return FakeCalendarProvider(clock)


@pytest.fixture
def provider_factory(provider):
    async def factory(integration, db, calendar_id=None):
        return provider

    return factory


@pytest.fixture
def gate(timer):
    return SyncTriggerGate(MemoryCooldownStore(clock=timer), cooldown_seconds=2)


@pytest.fixture
def user(db):
    user = User(
        username="claire",
        email="claire@example.com",
        first_name="Claire",
        last_name="Martin",
        role="DIETITIAN",
        api_token_hash=hash_api_token(API_TOKEN),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def patient(db, user):
    patient = Patient(dietitian_id=user.id, first_name="Jean", last_name="Dupont")
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


@pytest.fixture
def integration(db, user):
    integration = GoogleCalendarIntegration(
        user_id=user.id,
        access_token=encrypt_token("access-token"),
        refresh_token=encrypt_token("refresh-token"),
        token_expires_at=utcnow() + timedelta(hours=1),
        google_user_email="claire@example.com",
        auto_sync_enabled=True,
    )
    db.add(integration)
    db.commit()
    db.refresh(integration)
    return integration


@pytest.fixture
def repo(db, clock):
    return VisitRepository(db, clock=clock)


@pytest.fixture
def orchestrator(repo, provider, clock):
    return CalendarSyncOrchestrator(repo, provider, clock=clock)


@pytest.fixture
def sync_service(db, provider_factory, gate, clock):
    return CalendarSyncService(db, provider_factory=provider_factory, gate=gate, clock=clock)


@pytest.fixture
def make_visit(repo, user, patient):
    def _make_visit(**overrides):
        data = {
            "dietitian_id": user.id,
            "patient_id": patient.id,
            "visit_date": T0 + timedelta(days=1),
            "duration_minutes": 60,
            "visit_type": "Suivi",
            "status": "SCHEDULED",
        }
        data.update(overrides)
        visit = repo.create_visit(**data)
        repo.drain_events()
        return visit

    return _make_visit


@pytest.fixture
def since(clock):
    return clock() - timedelta(days=7)
