from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from solarcrm import events
from solarcrm.api.deps import get_current_user
from solarcrm.core.config import get_settings
from solarcrm.core.database import Base, get_db
from solarcrm.core.rbac import ActorUser
from solarcrm.main import app
from solarcrm.middleware.rate_limit import reset_rate_limiter
from solarcrm.models import ActivityLogEntry


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="agent-1", role="agent", correlation_id=getattr(request.state, "correlation_id", None))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/leads",
        json={"customer_name": "Corr Lead", "phone": "9811000000"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_activity_log_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client, "corr-activity-1")

    entries = list(db_session.scalars(select(ActivityLogEntry).where(ActivityLogEntry.lead_id == uuid.UUID(lead["id"]))))
    assert entries
    assert all(entry.correlation_id == "corr-activity-1" for entry in entries)


def test_event_envelopes_include_correlation_id(client: TestClient) -> None:
    lead = _create_lead(client, "corr-event-1")
    steps = client.get(f"/api/leads/{lead['id']}/steps").json()
    first_step = steps[0]

    completed = client.post(
        f"/api/leads/{lead['id']}/steps/{first_step['id']}/complete",
        json={"remarks": "walk-in enquiry"},
        headers={"X-Correlation-Id": "corr-event-2"},
    )
    assert completed.status_code == 200

    created = [item for item in events.published_events if item.get("event_type") == "lead.created"]
    assert created[-1]["correlation_id"] == "corr-event-1"

    step_events = [item for item in events.published_events if item.get("event_type") == "timeline.step.complete"]
    assert step_events
    assert all(item["correlation_id"] == "corr-event-2" for item in step_events)


def test_rate_limited_response_includes_correlation_id(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_TIMELINE_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post(
        "/api/leads",
        json={"customer_name": "Rate Limit Lead 1", "phone": "9811000001"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert first.status_code == 201

    second = client.post(
        "/api/leads",
        json={"customer_name": "Rate Limit Lead 2", "phone": "9811000002"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
