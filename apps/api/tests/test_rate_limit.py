from __future__ import annotations

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
from solarcrm.main import app
from solarcrm.middleware.rate_limit import group_capacity, reset_rate_limiter, resolve_route_group


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_TIMELINE_MUTATIONS_PER_MINUTE", "3")
    monkeypatch.setenv("TIMELINE_SEED_DEFAULT_CATALOG", "false")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="office-1", role="office", correlation_id=getattr(request.state, "correlation_id", None))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_mutating_lead_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = []
    for index in range(5):
        response = client.post("/api/leads", json={"customer_name": f"Rate Limit Lead {index}", "phone": "9800000000"})
        responses.append(response)

    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "rate_limited"
    assert body["message"] == "Too many requests"
    assert body["details"]["retry_after"] >= 1
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/leads", json={"customer_name": "Readable Lead", "phone": "9800000001"})
    assert create.status_code == 201

    responses = [client.get("/api/leads") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_admin_overrides_use_their_own_bucket(client: TestClient) -> None:
    for index in range(3):
        assert client.post("/api/leads", json={"customer_name": f"Lead {index}", "phone": "9800000002"}).status_code == 201
    lead_id = client.get("/api/leads").json()[0]["id"]

    # the lead bucket is spent, the admin bucket is not
    assert client.post(f"/api/leads/{lead_id}/status", json={"status": "lead_interested"}).status_code == 429
    admin = client.post(f"/api/leads/{lead_id}/admin/close-project", json={"justification": "test"})
    assert admin.status_code != 429


def test_admin_bucket_has_its_own_capacity(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_ADMIN_OVERRIDES_PER_MINUTE", "1")
    get_settings.cache_clear()

    lead_id = client.post("/api/leads", json={"customer_name": "Admin Bucket", "phone": "9800000003"}).json()["id"]
    first = client.post(f"/api/leads/{lead_id}/admin/close-project", json={"justification": "test"})
    second = client.post(f"/api/leads/{lead_id}/admin/close-project", json={"justification": "test"})

    assert first.status_code != 429
    assert second.status_code == 429
    assert second.json()["details"]["route_group"] == "leads.admin"


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/api/leads", "leads"),
        ("/api/leads/7f0c/steps/91ab/complete", "leads"),
        ("/api/leads/7f0c/admin/move-forward", "leads.admin"),
        ("/api/steps/insert", "steps"),
        ("/api/documents/55aa/corrupted", "documents"),
    ],
)
def test_route_groups(path: str, expected: str) -> None:
    assert resolve_route_group(path) == expected


def test_admin_group_uses_admin_capacity() -> None:
    settings = get_settings()
    assert group_capacity(settings, "leads.admin") == settings.rate_limit_admin_overrides_per_minute
    assert group_capacity(settings, "steps") == 3
