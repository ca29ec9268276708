from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from solarcrm import events
from solarcrm.core.rbac import ROLE_ADMIN, ROLE_OFFICE, ActorUser, require_roles
from solarcrm.documents.models import (
    DOCUMENT_STATUS_CORRUPTED,
    DOCUMENT_STATUS_REPLACED,
    DOCUMENT_STATUS_VALID,
    Document,
)
from solarcrm.documents.schemas import DocumentCreate, DocumentRead
from solarcrm.errors import InvalidTransition, NotFoundError, TimelineError
from solarcrm.leads.service import LeadService, lead_service
from solarcrm.services.activity_log import write_activity


logger = logging.getLogger("solarcrm.lifecycle")


@dataclass(slots=True, eq=False)
class DocumentService:
    """Metadata registry for lead documents; the bytes live in external blob storage keyed by ``path``."""

    leads: LeadService = lead_service

    def register(self, session: Session, actor: ActorUser, lead_id: uuid.UUID, dto: DocumentCreate) -> DocumentRead:
        lead = self.leads.get_visible_lead(session, actor, lead_id)
        category = dto.category.strip()
        try:
            # a fresh upload supersedes whatever valid copy the category had
            superseded = list(
                session.scalars(
                    select(Document).where(
                        Document.lead_id == lead.id,
                        Document.category == category,
                        Document.status == DOCUMENT_STATUS_VALID,
                    )
                )
            )
            now = datetime.now(timezone.utc)
            for previous in superseded:
                previous.status = DOCUMENT_STATUS_REPLACED
                previous.status_changed_by = actor.user_id
                previous.status_changed_at = now

            document = Document(
                lead_id=lead.id,
                category=category,
                path=dto.path,
                file_name=dto.file_name,
                status=DOCUMENT_STATUS_VALID,
                uploaded_by=actor.user_id,
            )
            session.add(document)
            session.flush()
            write_activity(
                session,
                user_id=actor.user_id,
                action="document_uploaded",
                entity_type="document",
                entity_id=str(document.id),
                lead_id=lead.id,
                new_value={
                    "category": category,
                    "path": dto.path,
                    "status": DOCUMENT_STATUS_VALID,
                    "replaced_document_ids": [str(previous.id) for previous in superseded],
                },
                correlation_id=actor.correlation_id,
            )
            session.commit()
        except TimelineError:
            session.rollback()
            raise
        session.refresh(document)

        events.publish(
            {
                "event_type": "document.uploaded",
                "lead_id": str(lead.id),
                "document_id": str(document.id),
                "category": category,
                "correlation_id": actor.correlation_id,
            }
        )
        logger.info("document.uploaded", extra={"lead_id": str(lead.id), "action": "document_upload", "actor_role": actor.role})
        return DocumentRead.model_validate(document)

    def list_for_lead(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: uuid.UUID,
        *,
        category: str | None = None,
    ) -> list[DocumentRead]:
        lead = self.leads.get_visible_lead(session, actor, lead_id)
        stmt = select(Document).where(Document.lead_id == lead.id)
        if category is not None:
            stmt = stmt.where(Document.category == category)
        stmt = stmt.order_by(Document.category, Document.uploaded_at.desc())
        return [DocumentRead.model_validate(row) for row in session.scalars(stmt)]

    def mark_status(self, session: Session, actor: ActorUser, document_id: uuid.UUID, status: str) -> DocumentRead:
        require_roles(actor, ROLE_ADMIN, ROLE_OFFICE)
        if status not in {DOCUMENT_STATUS_VALID, DOCUMENT_STATUS_CORRUPTED}:
            raise InvalidTransition(f"documents cannot be marked '{status}' directly", details={"status": status})

        document = session.get(Document, document_id)
        if document is None:
            raise NotFoundError("document not found", details={"document_id": str(document_id)})
        if document.status == DOCUMENT_STATUS_REPLACED:
            raise InvalidTransition("a replaced document can no longer change status", details={"document_id": str(document_id)})
        if document.status == status:
            return DocumentRead.model_validate(document)

        before = document.status
        document.status = status
        document.status_changed_by = actor.user_id
        document.status_changed_at = datetime.now(timezone.utc)
        write_activity(
            session,
            user_id=actor.user_id,
            action=f"document_marked_{status}",
            entity_type="document",
            entity_id=str(document.id),
            lead_id=document.lead_id,
            old_value={"status": before},
            new_value={"status": status, "category": document.category},
            correlation_id=actor.correlation_id,
        )
        session.commit()
        session.refresh(document)
        logger.info(
            "document.status_changed",
            extra={"lead_id": str(document.lead_id), "action": f"document_{status}", "actor_role": actor.role},
        )
        return DocumentRead.model_validate(document)


document_service = DocumentService()
