from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from solarcrm.core.config import DEFAULT_MANDATORY_DOCUMENT_CATEGORIES, get_settings
from solarcrm.core.database import Base
from solarcrm.core.rbac import ActorUser
from solarcrm.errors import InvalidTransition, RoleNotPermitted, ValidationFailed
from solarcrm.leads.schemas import LeadCreate
from solarcrm.leads.service import lead_service
from solarcrm.timeline.catalog import classify_step_name, step_catalog
from solarcrm.timeline.schemas import StepTemplateCreate, StepTemplateUpdate


ADMIN = ActorUser(user_id="admin-1", role="admin")
OFFICE = ActorUser(user_id="office-1", role="office")


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
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _names(db_session: Session) -> list[str]:
    return [row.name for row in step_catalog.list_templates(db_session)]


def _create(db_session: Session, *names: str) -> None:
    for name in names:
        step_catalog.create_template(db_session, ADMIN, StepTemplateCreate(name=name, allowed_roles=["office"]))


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Payment/Loan Processing", "payment"),
        ("Loan Approval - SBI", "loan"),
        ("Installation Scheduling", "installation"),
        ("Net Meter Installation", "net_meter"),
        ("Subsidy Release", "subsidy"),
        ("Project Closure", "closure"),
        ("Site Survey", "none"),
    ],
)
def test_dependency_role_is_derived_from_name(name: str, expected: str) -> None:
    assert classify_step_name(name) == expected


def test_default_catalog_is_seeded_once(db_session: Session) -> None:
    assert step_catalog.ensure_default_catalog(db_session) == 20
    assert step_catalog.ensure_default_catalog(db_session) == 0

    templates = step_catalog.list_templates(db_session)
    assert [row.order_index for row in templates] == list(range(1, 21))
    assert templates[0].name == "Lead Created"
    assert templates[-1].name == "Project Closure"
    assert templates[-1].dependency_role == "closure"

    documents = next(row for row in templates if row.name == "Document Collection")
    assert sorted(documents.required_document_categories) == sorted(DEFAULT_MANDATORY_DOCUMENT_CATEGORIES)
    assert documents.customer_upload is True
    assert documents.advances_status_to == "lead_processing"


def test_insert_shifts_later_templates(db_session: Session) -> None:
    _create(db_session, "Lead Created", "Site Survey", "Project Closure")

    inserted = step_catalog.insert_template(
        db_session,
        ADMIN,
        StepTemplateCreate(name="Roof Inspection", allowed_roles=["installer", "office"], attachments_required=True),
        2,
    )

    assert inserted.order_index == 2
    assert inserted.attachments_allowed is True
    assert _names(db_session) == ["Lead Created", "Roof Inspection", "Site Survey", "Project Closure"]
    assert [row.order_index for row in step_catalog.list_templates(db_session)] == [1, 2, 3, 4]


def test_insert_past_the_end_appends(db_session: Session) -> None:
    _create(db_session, "Lead Created")
    inserted = step_catalog.insert_template(db_session, ADMIN, StepTemplateCreate(name="Commissioning", allowed_roles=["office"]), 99)
    assert inserted.order_index == 2


def test_duplicate_names_are_rejected(db_session: Session) -> None:
    _create(db_session, "Lead Created")
    with pytest.raises(ValidationFailed):
        _create(db_session, "Lead Created")


def test_reorder_renumbers_contiguously(db_session: Session) -> None:
    _create(db_session, "Lead Created", "Site Survey", "Project Closure")
    ids = {row.name: row.id for row in step_catalog.list_templates(db_session)}

    reordered = step_catalog.reorder(db_session, ADMIN, [ids["Site Survey"], ids["Lead Created"], ids["Project Closure"]])

    assert [row.name for row in reordered] == ["Site Survey", "Lead Created", "Project Closure"]
    assert [row.order_index for row in reordered] == [1, 2, 3]


def test_reorder_must_be_a_full_permutation(db_session: Session) -> None:
    _create(db_session, "Lead Created", "Site Survey")
    ids = [row.id for row in step_catalog.list_templates(db_session)]

    with pytest.raises(ValidationFailed) as exc_info:
        step_catalog.reorder(db_session, ADMIN, ids[:1])
    assert exc_info.value.missing == [f"template {ids[1]}"]


def test_only_admins_manage_the_catalog(db_session: Session) -> None:
    with pytest.raises(RoleNotPermitted):
        step_catalog.create_template(db_session, OFFICE, StepTemplateCreate(name="Site Survey", allowed_roles=["office"]))


def test_unknown_roles_are_rejected() -> None:
    with pytest.raises(ValueError):
        StepTemplateCreate(name="Site Survey", allowed_roles=["supervisor"])


def test_referenced_templates_are_frozen_but_documents_stay_editable(db_session: Session) -> None:
    _create(db_session, "Lead Created", "Document Collection")
    lead_service.create_lead(db_session, OFFICE, LeadCreate(customer_name="Meena Shah", phone="9988776655"))
    template = step_catalog.list_templates(db_session)[1]

    with pytest.raises(InvalidTransition):
        step_catalog.update_template(db_session, ADMIN, template.id, StepTemplateUpdate(remarks_required=True))

    updated = step_catalog.set_required_documents(db_session, ADMIN, template.id, ["pan_card", "bijli_bill", "pan_card"])
    assert sorted(updated.required_document_categories) == ["bijli_bill", "pan_card"]


def test_unreferenced_template_update(db_session: Session) -> None:
    _create(db_session, "Site Survey")
    template = step_catalog.list_templates(db_session)[0]

    updated = step_catalog.update_template(
        db_session, ADMIN, template.id, StepTemplateUpdate(allowed_roles=["Agent", "office"], remarks_required=True)
    )

    assert updated.allowed_roles == ["agent", "office"]
    assert updated.remarks_required is True
