from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import API_TOKEN, T0
from nutrivault.database import get_db
from nutrivault.domain.calendar_sync import router as calendar_sync_router
from nutrivault.domain.calendar_sync.exceptions import CalendarAuthError, TransientProviderError
from nutrivault.domain.calendar_sync.handlers import build_calendar_sync_handler
from nutrivault.domain.calendar_sync.router import get_calendar_sync_service
from nutrivault.domain.visits.router import get_visit_event_bus
from nutrivault.main import app
from nutrivault.shared.events import VisitEventBus

AUTH = {"Authorization": f"Bearer {API_TOKEN}"}


@pytest.fixture
def client(db, sync_service, provider_factory, gate, clock, user):
    def override_get_db():
        yield db

    def override_event_bus():
        bus = VisitEventBus()
        bus.subscribe(build_calendar_sync_handler(db, provider_factory=provider_factory, gate=gate, clock=clock))
        return bus

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_calendar_sync_service] = lambda: sync_service
    app.dependency_overrides[get_visit_event_bus] = override_event_bus
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_requires_token(client):
    assert client.get("/visits").status_code == 401
    assert client.get("/visits", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_create_visit_is_synced(client, provider, integration, patient):
    response = client.post(
        "/visits",
        json={"patient_id": patient.id, "visit_date": "2026-03-03T09:00:00Z", "duration_minutes": 45},
        headers=AUTH,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["sync_status"] == "synced"
    assert body["google_event_id"] in provider.events


def test_create_visit_validation(client, patient):
    response = client.post(
        "/visits",
        json={"patient_id": patient.id, "visit_date": "2026-03-03T09:00:00Z", "status": "LATE"},
        headers=AUTH,
    )

    assert response.status_code == 422


def test_agenda_view_triggers_one_sync(client, provider, integration, make_visit):
    make_visit()
    params = {"start": "2026-03-01T00:00:00", "end": "2026-03-08T00:00:00"}

    first = client.get("/visits", params=params, headers=AUTH)
    calls_after_first = list(provider.calls)
    second = client.get("/visits", params=params, headers=AUTH)

    assert first.status_code == 200
    assert first.json()[0]["sync_status"] == "synced"
    assert [name for name, _ in calls_after_first] == ["insert_event"]
    assert second.status_code == 200
    assert provider.calls == calls_after_first


def test_plain_listing_does_not_sync(client, provider, integration, make_visit):
    make_visit()

    response = client.get("/visits", headers=AUTH)

    assert response.status_code == 200
    assert len(response.json()) == 1
    assert provider.calls == []


def test_manual_sync(client, provider, integration, make_visit):
    visit = make_visit()

    response = client.post("/google-calendar/sync", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["synced"] == 1
    assert body["items"] == [
        {"visit_id": visit.id, "status": "synced", "action": "insert", "reason": None, "message": None}
    ]


def test_manual_sync_with_window(client, provider, integration, make_visit):
    make_visit(visit_date=T0 - timedelta(days=20))

    response = client.post("/google-calendar/sync", json={"since_days": 30}, headers=AUTH)

    assert response.json()["synced"] == 1


def test_manual_sync_window_is_validated(client, integration):
    response = client.post("/google-calendar/sync", json={"since_days": 1000}, headers=AUTH)

    assert response.status_code == 422


def test_manual_sync_auth_failure_asks_to_reconnect(client, provider, integration, make_visit):
    make_visit()
    provider.fail("insert_event", CalendarAuthError("invalid_grant", 401))

    response = client.post("/google-calendar/sync", headers=AUTH)

    assert response.status_code == 401
    assert "reconnect" in response.json()["detail"]


def test_manual_sync_not_connected(client):
    response = client.post("/google-calendar/sync", headers=AUTH)

    assert response.status_code == 400


def test_status(client, integration):
    response = client.get("/google-calendar/status", headers=AUTH)

    assert response.json()["connected"] is True
    assert response.json()["calendar_id"] == "primary"


def test_sync_issues_and_stats(client, integration):
    issues = client.get("/google-calendar/sync/issues", headers=AUTH)
    stats = client.get("/google-calendar/sync/stats", headers=AUTH)

    assert issues.json() == {"total": 0, "conflicts": 0, "errors": 0, "visits": []}
    assert stats.json()["totalVisits"] == 0


def test_resolve_visit_not_in_conflict(client, integration, make_visit):
    visit = make_visit()

    response = client.post(
        f"/google-calendar/visits/{visit.id}/resolve", json={"resolution": "keep_local"}, headers=AUTH
    )

    assert response.status_code == 409


def test_resolve_rejects_unknown_resolution(client, integration, make_visit):
    visit = make_visit()

    response = client.post(
        f"/google-calendar/visits/{visit.id}/resolve", json={"resolution": "both"}, headers=AUTH
    )

    assert response.status_code == 422


def test_unknown_visit(client):
    assert client.get("/visits/999", headers=AUTH).status_code == 404


def test_delete_visit(client, provider, integration, make_visit):
    visit = make_visit()
    client.post("/google-calendar/sync", headers=AUTH)
    event_id = visit.google_event_id

    response = client.delete(f"/visits/{visit.id}", headers=AUTH)

    assert response.status_code == 200
    assert provider.method_calls("delete_event") == [event_id]


def mock_job_pool(monkeypatch, job=None, error=None):
    pool = MagicMock()
    pool.enqueue_job = AsyncMock(return_value=job, side_effect=error)
    pool.close = AsyncMock()
    monkeypatch.setattr(calendar_sync_router, "create_pool", AsyncMock(return_value=pool))
    return pool


def test_background_sync_is_queued_and_pool_closed(client, integration, user, monkeypatch):
    pool = mock_job_pool(monkeypatch, job=SimpleNamespace(job_id="job-1"))

    response = client.post("/google-calendar/sync/background", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"jobId": "job-1", "message": "Calendar sync queued"}
    pool.enqueue_job.assert_awaited_once_with("sync_account_task", user.id)
    pool.close.assert_awaited_once()


def test_background_sync_closes_pool_when_enqueue_fails(client, integration, monkeypatch):
    pool = mock_job_pool(monkeypatch, error=ConnectionError("redis went away"))

    response = client.post("/google-calendar/sync/background", headers=AUTH)

    assert response.status_code == 503
    pool.close.assert_awaited_once()


def test_background_sync_already_queued(client, integration, monkeypatch):
    pool = mock_job_pool(monkeypatch, job=None)

    response = client.post("/google-calendar/sync/background", headers=AUTH)

    assert response.status_code == 409
    pool.close.assert_awaited_once()


def test_background_sync_redis_unavailable(client, integration, monkeypatch):
    monkeypatch.setattr(
        calendar_sync_router, "create_pool", AsyncMock(side_effect=ConnectionError("connection refused"))
    )

    response = client.post("/google-calendar/sync/background", headers=AUTH)

    assert response.status_code == 503


def test_background_sync_not_connected(client, monkeypatch):
    create_pool = AsyncMock()
    monkeypatch.setattr(calendar_sync_router, "create_pool", create_pool)

    response = client.post("/google-calendar/sync/background", headers=AUTH)

    assert response.status_code == 400
    create_pool.assert_not_awaited()


def test_manual_sync_reports_listing_failure(client, provider, integration, make_visit):
    linked = make_visit()
    client.post("/google-calendar/sync", headers=AUTH)
    make_visit(visit_date=T0 + timedelta(days=2))
    provider.fail("list_events", TransientProviderError("Google Calendar returned 503"), times=1)

    response = client.post("/google-calendar/sync", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["synced"] == 1
    assert body["errors"] == 0
    assert len(body["warnings"]) == 1
    assert linked.google_event_id in provider.events
