from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from solarcrm.api.deps import get_current_user
from solarcrm.core.config import get_settings
from solarcrm.core.database import Base, get_db
from solarcrm.core.rbac import ActorUser
from solarcrm.middleware.rate_limit import reset_rate_limiter
from solarcrm.main import app


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    lead_id = uuid.uuid4()
    response = client.get(f"/api/leads/{lead_id}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "solarcrm.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "lead_id", None) == str(lead_id)
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_transition_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    created = client.post("/api/leads", json={"customer_name": "Log Lead", "phone": "9822000000"}, headers={"X-Correlation-Id": "abc-456"})
    assert created.status_code == 201
    lead_id = created.json()["id"]
    step = client.get(f"/api/leads/{lead_id}/steps").json()[0]

    completed = client.post(
        f"/api/leads/{lead_id}/steps/{step['id']}/complete",
        json={"remarks": "walk-in"},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert completed.status_code == 200

    transition_records = [record for record in caplog.records if record.name == "solarcrm.timeline"]
    assert any(
        record.getMessage() == "timeline.transition.applied"
        and getattr(record, "lead_id", None) == lead_id
        and getattr(record, "step_id", None) == step["id"]
        and getattr(record, "action", None) == "complete"
        and getattr(record, "outcome", None) == "applied"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in transition_records
    )


def test_rejected_transition_is_logged_with_error_code(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    created = client.post("/api/leads", json={"customer_name": "Log Lead", "phone": "9822000001"})
    lead_id = created.json()["id"]
    steps = client.get(f"/api/leads/{lead_id}/steps").json()
    closure = steps[-1]

    rejected = client.post(f"/api/leads/{lead_id}/steps/{closure['id']}/complete", json={"remarks": "too early"})
    assert rejected.status_code >= 400

    assert any(
        record.name == "solarcrm.timeline"
        and record.getMessage() == "timeline.transition.rejected"
        and getattr(record, "outcome", None) == rejected.json()["code"]
        for record in caplog.records
    )
