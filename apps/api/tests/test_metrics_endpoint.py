from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from solarcrm.api.deps import get_current_user
from solarcrm.core.auth import AuthUser, get_current_user as auth_get_current_user
from solarcrm.core.config import get_settings
from solarcrm.core.database import Base, get_db
from solarcrm.core.rbac import ActorUser
from solarcrm.main import app
from solarcrm.middleware.rate_limit import reset_rate_limiter


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
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

    def override_actor(request: Request) -> ActorUser:
        return ActorUser(user_id="agent-1", role="agent", correlation_id="metrics-corr-1")

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_actor
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_timeline_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    lead = client.post("/api/leads", json={"customer_name": "Metrics Lead", "phone": "9833000000"})
    assert lead.status_code == 201
    lead_id = lead.json()["id"]
    step = client.get(f"/api/leads/{lead_id}/steps").json()[0]

    completed = client.post(f"/api/leads/{lead_id}/steps/{step['id']}/complete", json={"remarks": "walk-in"})
    assert completed.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "timeline_transitions_total" in body
    assert "timeline_transition_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/leads/{id}/steps/{id}/complete"' in body
    assert 'action="complete"' in body


def test_metrics_endpoint_requires_metrics_role(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="agent-1", roles=["agent"])

    response = client.get("/metrics")
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"
