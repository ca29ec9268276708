from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

import pytest

from solarcrm.documents.store import InMemoryDocumentStore
from solarcrm.errors import ValidationFailed
from solarcrm.timeline.models import StepTemplate, StepTemplateDocument
from solarcrm.timeline.schemas import PaymentDetails, SubsidyDetails, TransitionRequest
from solarcrm.timeline.validation import ValidationPolicy


def _template(
    name: str,
    *,
    remarks_required: bool = False,
    attachments_allowed: bool = False,
    attachments_required: bool = False,
    dependency_role: str = "none",
    documents: tuple[str, ...] = (),
) -> StepTemplate:
    template = StepTemplate(
        name=name,
        order_index=1,
        allowed_roles=["admin", "office"],
        remarks_required=remarks_required,
        attachments_allowed=attachments_allowed,
        attachments_required=attachments_required,
        customer_upload=False,
        dependency_role=dependency_role,
    )
    template.required_documents = [StepTemplateDocument(category=category) for category in documents]
    return template


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def policy(store: InMemoryDocumentStore) -> ValidationPolicy:
    return ValidationPolicy(document_store=store)


def test_no_requirements_means_nothing_missing(policy: ValidationPolicy) -> None:
    assert policy.missing_requirements(None, uuid.uuid4(), _template("Lead Created"), TransitionRequest()) == []


def test_attachments_rejected_where_not_allowed(policy: ValidationPolicy) -> None:
    missing = policy.missing_requirements(
        None,
        uuid.uuid4(),
        _template("Installer Assignment", remarks_required=True),
        TransitionRequest(attachments=["leads/x/photo.jpg"]),
    )
    assert missing == ["remarks", "attachments_not_allowed"]


def test_required_attachments_must_be_present(policy: ValidationPolicy) -> None:
    template = _template("Installation Completed", attachments_allowed=True, attachments_required=True)
    assert policy.missing_requirements(None, uuid.uuid4(), template, TransitionRequest()) == ["attachments"]


def test_details_type_must_match_step_kind(policy: ValidationPolicy) -> None:
    template = _template("Payment/Loan Processing", dependency_role="payment")
    subsidy = SubsidyDetails(application_reference="SUB-1", submission_date=date(2026, 10, 1))

    missing = policy.missing_requirements(None, uuid.uuid4(), template, TransitionRequest(details=subsidy))
    assert missing == ["details.type: expected payment"]

    payment = PaymentDetails(amount=Decimal("125000"), payment_date=date(2026, 10, 2), payment_method="upi")
    assert policy.missing_requirements(None, uuid.uuid4(), template, TransitionRequest(details=payment)) == []


def test_documents_need_a_valid_copy(policy: ValidationPolicy, store: InMemoryDocumentStore) -> None:
    lead_id = uuid.uuid4()
    template = _template("Document Collection", documents=("aadhar_front", "pan_card"))
    store.add(lead_id, "aadhar_front")
    store.add(lead_id, "pan_card", status="corrupted")

    with pytest.raises(ValidationFailed) as exc_info:
        policy.check(None, lead_id, template, TransitionRequest())
    assert exc_info.value.missing == ["document:pan_card"]

    store.add(lead_id, "pan_card")
    policy.check(None, lead_id, template, TransitionRequest())


def test_documents_of_other_leads_do_not_count(policy: ValidationPolicy, store: InMemoryDocumentStore) -> None:
    template = _template("Document Collection", documents=("bijli_bill",))
    store.add(uuid.uuid4(), "bijli_bill")

    missing = policy.missing_requirements(None, uuid.uuid4(), template, TransitionRequest())
    assert missing == ["document:bijli_bill"]
