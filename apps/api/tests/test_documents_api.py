from __future__ import annotations

from collections.abc import Callable, Generator

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
from solarcrm.middleware.rate_limit import reset_rate_limiter


ACTORS = {
    "office": ("office-1", "office"),
    "agent": ("agent-1", "agent"),
}


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
    monkeypatch.setenv("TIMELINE_SEED_DEFAULT_CATALOG", "false")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "agent"}

    def override_get_current_user(request: Request) -> ActorUser:
        user_id, role = ACTORS[state["current"]]
        return ActorUser(user_id=user_id, role=role, correlation_id=getattr(request.state, "correlation_id", None))

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _lead_id(client: TestClient) -> str:
    response = client.post("/api/leads", json={"customer_name": "Farah Khan", "phone": "9700012345"})
    assert response.status_code == 201
    return response.json()["id"]


def _upload(client: TestClient, lead_id: str, category: str, path: str) -> dict:
    response = client.post(f"/api/leads/{lead_id}/documents", json={"category": category, "path": path, "file_name": "scan.pdf"})
    assert response.status_code == 201
    return response.json()


def test_upload_replaces_previous_valid_copy(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead_id = _lead_id(test_client)

    first = _upload(test_client, lead_id, "pan_card", "leads/pan-v1.pdf")
    second = _upload(test_client, lead_id, "pan_card", "leads/pan-v2.pdf")

    listed = test_client.get(f"/api/leads/{lead_id}/documents", params={"category": "pan_card"})
    assert listed.status_code == 200
    statuses = {row["id"]: row["status"] for row in listed.json()}
    assert statuses == {first["id"]: "replaced", second["id"]: "valid"}


def test_staff_can_flag_corrupted_documents(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    lead_id = _lead_id(test_client)
    document = _upload(test_client, lead_id, "bijli_bill", "leads/bill.pdf")

    forbidden = test_client.post(f"/api/documents/{document['id']}/corrupted")
    assert forbidden.status_code == 403

    set_actor("office")
    flagged = test_client.post(f"/api/documents/{document['id']}/corrupted")
    assert flagged.status_code == 200
    assert flagged.json()["status"] == "corrupted"
    assert flagged.json()["status_changed_by"] == "office-1"

    restored = test_client.post(f"/api/documents/{document['id']}/valid")
    assert restored.json()["status"] == "valid"


def test_replaced_documents_are_frozen(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    lead_id = _lead_id(test_client)
    old = _upload(test_client, lead_id, "aadhar_front", "leads/a1.pdf")
    _upload(test_client, lead_id, "aadhar_front", "leads/a2.pdf")

    set_actor("office")
    response = test_client.post(f"/api/documents/{old['id']}/valid")
    assert response.status_code == 409
    assert response.json()["code"] == "invalid_transition"


def test_unknown_document_is_not_found(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("office")
    response = test_client.post("/api/documents/0b7e5f0e-3a35-4c4f-8d4b-7f1b8b9f8c21/valid")
    assert response.status_code == 404
