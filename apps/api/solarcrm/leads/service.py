from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from solarcrm import events
from solarcrm.core.rbac import (
    ROLE_ADMIN,
    ROLE_AGENT,
    ROLE_CUSTOMER,
    ROLE_INSTALLER,
    ROLE_OFFICE,
    ActorUser,
    require_roles,
)
from solarcrm.errors import InvalidTransition, NotFoundError, ProjectClosedError, TimelineError
from solarcrm.leads.models import LEAD_STATUS_CANCELLED, LEAD_STATUS_INTERESTED, LEAD_STATUS_LEAD, Lead
from solarcrm.leads.schemas import LeadCreate, LeadCustomerLink, LeadInstallerAssign, LeadRead, LeadStatusUpdate
from solarcrm.services.activity_log import write_activity
from solarcrm.timeline.catalog import StepTemplateCatalog, step_catalog
from solarcrm.timeline.store import LeadStepStore, lead_step_store


logger = logging.getLogger("solarcrm.lifecycle")

# manual status moves: target -> statuses it may be reached from
MANUAL_STATUS_SOURCES: dict[str, tuple[str, ...]] = {
    LEAD_STATUS_INTERESTED: (LEAD_STATUS_LEAD,),
    LEAD_STATUS_CANCELLED: ("lead", "lead_interested", "lead_processing", "lead_completed"),
}


def can_view_lead(actor: ActorUser, lead: Lead) -> bool:
    if actor.role in {ROLE_ADMIN, ROLE_OFFICE}:
        return True
    if actor.role == ROLE_AGENT:
        return lead.created_by == actor.user_id
    if actor.role == ROLE_INSTALLER:
        return lead.installer_id == actor.user_id
    if actor.role == ROLE_CUSTOMER:
        return lead.customer_account_id == actor.user_id
    return False


def scope_lead_query(actor: ActorUser, stmt: Select[Any]) -> Select[Any]:
    if actor.role in {ROLE_ADMIN, ROLE_OFFICE}:
        return stmt
    if actor.role == ROLE_AGENT:
        return stmt.where(Lead.created_by == actor.user_id)
    if actor.role == ROLE_INSTALLER:
        return stmt.where(Lead.installer_id == actor.user_id)
    if actor.role == ROLE_CUSTOMER:
        return stmt.where(Lead.customer_account_id == actor.user_id)
    return stmt.where(Lead.id.is_(None))


def _lead_values(lead: Lead) -> dict[str, Any]:
    return {
        "status": lead.status,
        "closed": lead.closed,
        "installer_id": lead.installer_id,
        "customer_account_id": lead.customer_account_id,
        "row_version": lead.row_version,
    }


@dataclass(slots=True, eq=False)
class LeadService:
    store: LeadStepStore = lead_step_store
    catalog: StepTemplateCatalog = step_catalog

    def create_lead(self, session: Session, actor: ActorUser, dto: LeadCreate) -> LeadRead:
        require_roles(actor, ROLE_ADMIN, ROLE_OFFICE, ROLE_AGENT)
        data = dto.model_dump(mode="python")
        lead = Lead(**data, status=LEAD_STATUS_LEAD, closed=False, created_by=actor.user_id)
        try:
            session.add(lead)
            session.flush()
            templates = self.catalog.ordered_templates(session)
            steps = self.store.initialize_timeline(session, lead, templates)
            write_activity(
                session,
                user_id=actor.user_id,
                action="lead_created",
                entity_type="lead",
                entity_id=str(lead.id),
                lead_id=lead.id,
                new_value={**_lead_values(lead), "customer_name": lead.customer_name, "steps_created": len(steps)},
                correlation_id=actor.correlation_id,
            )
            session.commit()
        except TimelineError:
            session.rollback()
            raise
        session.refresh(lead)

        events.publish(
            {
                "event_type": "lead.created",
                "lead_id": str(lead.id),
                "created_by": actor.user_id,
                "steps_created": len(steps),
                "correlation_id": actor.correlation_id,
            }
        )
        logger.info("lead.created", extra={"lead_id": str(lead.id), "action": "lead_create", "actor_role": actor.role})
        return LeadRead.model_validate(lead)

    def get_visible_lead(self, session: Session, actor: ActorUser, lead_id: uuid.UUID) -> Lead:
        lead = session.get(Lead, lead_id)
        if lead is None or not can_view_lead(actor, lead):
            raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})
        return lead

    def get_lead(self, session: Session, actor: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self.get_visible_lead(session, actor, lead_id))

    def list_leads(
        self,
        session: Session,
        actor: ActorUser,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LeadRead]:
        stmt = scope_lead_query(actor, select(Lead))
        if status is not None:
            stmt = stmt.where(Lead.status == status)
        stmt = stmt.order_by(Lead.created_at.desc(), Lead.id).limit(limit).offset(offset)
        return [LeadRead.model_validate(row) for row in session.scalars(stmt)]

    def update_status(self, session: Session, actor: ActorUser, lead_id: uuid.UUID, dto: LeadStatusUpdate) -> LeadRead:
        require_roles(actor, ROLE_ADMIN, ROLE_OFFICE)
        lead = self.get_visible_lead(session, actor, lead_id)
        if lead.closed:
            raise ProjectClosedError("project is closed; reopen it before changing the lead", details={"lead_id": str(lead_id)})
        if lead.status not in MANUAL_STATUS_SOURCES[dto.status]:
            raise InvalidTransition(
                f"lead cannot move from '{lead.status}' to '{dto.status}'",
                details={"status": lead.status, "requested": dto.status},
            )
        return self._write(
            session,
            actor,
            lead,
            action="lead_status_changed",
            values={"status": dto.status, "manual_status": dto.status},
            expected_row_version=dto.expected_row_version,
            extra={"reason": dto.reason},
            event_type="lead.status_changed",
        )

    def assign_installer(self, session: Session, actor: ActorUser, lead_id: uuid.UUID, dto: LeadInstallerAssign) -> LeadRead:
        require_roles(actor, ROLE_ADMIN, ROLE_OFFICE)
        lead = self.get_visible_lead(session, actor, lead_id)
        if lead.closed:
            raise ProjectClosedError("project is closed; reopen it before changing the lead", details={"lead_id": str(lead_id)})
        return self._write(
            session,
            actor,
            lead,
            action="installer_assigned",
            values={"installer_id": dto.installer_id},
            expected_row_version=dto.expected_row_version,
            event_type="lead.installer_assigned",
        )

    def link_customer(self, session: Session, actor: ActorUser, lead_id: uuid.UUID, dto: LeadCustomerLink) -> LeadRead:
        require_roles(actor, ROLE_ADMIN, ROLE_OFFICE)
        lead = self.get_visible_lead(session, actor, lead_id)
        if lead.customer_account_id and lead.customer_account_id != dto.customer_account_id:
            raise InvalidTransition(
                "lead is already linked to another customer account",
                details={"customer_account_id": lead.customer_account_id},
            )
        return self._write(
            session,
            actor,
            lead,
            action="customer_linked",
            values={"customer_account_id": dto.customer_account_id},
            expected_row_version=dto.expected_row_version,
            event_type="lead.customer_linked",
        )

    def _write(
        self,
        session: Session,
        actor: ActorUser,
        lead: Lead,
        *,
        action: str,
        values: dict[str, Any],
        expected_row_version: int | None,
        event_type: str,
        extra: dict[str, Any] | None = None,
    ) -> LeadRead:
        before = _lead_values(lead)
        try:
            self.store.update_lead(
                session,
                lead,
                expected_row_version=expected_row_version or lead.row_version,
                values=values,
            )
            write_activity(
                session,
                user_id=actor.user_id,
                action=action,
                entity_type="lead",
                entity_id=str(lead.id),
                lead_id=lead.id,
                old_value=before,
                new_value={**_lead_values(lead), **(extra or {})},
                correlation_id=actor.correlation_id,
            )
            session.commit()
        except TimelineError:
            session.rollback()
            raise
        session.refresh(lead)

        events.publish(
            {
                "event_type": event_type,
                "lead_id": str(lead.id),
                "actor_user_id": actor.user_id,
                "before": before,
                "after": _lead_values(lead),
                "correlation_id": actor.correlation_id,
            }
        )
        logger.info(action.replace("_", "."), extra={"lead_id": str(lead.id), "action": action, "actor_role": actor.role})
        return LeadRead.model_validate(lead)


lead_service = LeadService()
