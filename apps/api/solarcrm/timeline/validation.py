from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy.orm import Session

from solarcrm.documents.models import DOCUMENT_STATUS_VALID
from solarcrm.documents.store import DocumentStore, get_document_store
from solarcrm.errors import ValidationFailed
from solarcrm.timeline.models import (
    DEPENDENCY_ROLE_CLOSURE,
    DEPENDENCY_ROLE_LOAN,
    DEPENDENCY_ROLE_NET_METER,
    DEPENDENCY_ROLE_PAYMENT,
    DEPENDENCY_ROLE_SUBSIDY,
    StepTemplate,
)
from solarcrm.timeline.schemas import TransitionRequest


DETAIL_TYPES_BY_ROLE: dict[str, frozenset[str]] = {
    DEPENDENCY_ROLE_PAYMENT: frozenset({"payment"}),
    DEPENDENCY_ROLE_LOAN: frozenset({"loan_application", "loan_approval"}),
    DEPENDENCY_ROLE_SUBSIDY: frozenset({"subsidy_application"}),
    DEPENDENCY_ROLE_NET_METER: frozenset({"net_meter_application"}),
    DEPENDENCY_ROLE_CLOSURE: frozenset({"project_closure"}),
}


@dataclass(slots=True, eq=False)
class ValidationPolicy:
    document_store: DocumentStore | None = None

    def missing_requirements(
        self,
        session: Session,
        lead_id: uuid.UUID,
        template: StepTemplate,
        payload: TransitionRequest,
    ) -> list[str]:
        missing: list[str] = []

        if template.remarks_required and not (payload.remarks or "").strip():
            missing.append("remarks")

        if payload.attachments and not template.attachments_allowed:
            missing.append("attachments_not_allowed")
        elif template.attachments_required and not payload.attachments:
            missing.append("attachments")

        if payload.details is not None:
            accepted = DETAIL_TYPES_BY_ROLE.get(template.dependency_role, frozenset())
            if payload.details.type not in accepted:
                expected = ", ".join(sorted(accepted)) or "none"
                missing.append(f"details.type: expected {expected}")

        store = self.document_store or get_document_store()
        for category in template.required_document_categories:
            documents = store.list_documents(session, lead_id, category)
            if not any(document.status == DOCUMENT_STATUS_VALID for document in documents):
                missing.append(f"document:{category}")

        return missing

    def check(
        self,
        session: Session,
        lead_id: uuid.UUID,
        template: StepTemplate,
        payload: TransitionRequest,
    ) -> None:
        missing = self.missing_requirements(session, lead_id, template, payload)
        if missing:
            raise ValidationFailed(f"step '{template.name}' cannot be completed yet", missing=missing)


validation_policy = ValidationPolicy()
