from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.orm import Session

from solarcrm.core.rbac import ROLE_ADMIN, ROLE_OFFICE, ActorUser, require_roles
from solarcrm.timeline.catalog import StepTemplateCatalog, step_catalog
from solarcrm.timeline.engine import ACTION_COMPLETE, TimelineTransitionEngine, timeline_engine
from solarcrm.timeline.models import DEPENDENCY_ROLE_LOAN, DEPENDENCY_ROLE_PAYMENT, StepTemplate
from solarcrm.timeline.schemas import LoanInitiateRequest, LoanWorkflowRead, StepTemplateCreate, TransitionRequest
from solarcrm.timeline.store import to_step_read


logger = logging.getLogger("solarcrm.timeline")

LOAN_STEP_ROLES = [ROLE_ADMIN, ROLE_OFFICE]


def loan_step_names(provider: str) -> tuple[str, str]:
    return f"Loan Application - {provider}", f"Loan Approval - {provider}"


@dataclass(slots=True, eq=False)
class LoanWorkflow:
    """Per-provider loan steps, placed right after the payment step of the catalog."""

    catalog: StepTemplateCatalog = step_catalog
    engine: TimelineTransitionEngine = timeline_engine

    def initiate(self, session: Session, actor: ActorUser, lead_id: uuid.UUID, dto: LoanInitiateRequest) -> LoanWorkflowRead:
        require_roles(actor, ROLE_ADMIN, ROLE_OFFICE)
        provider = dto.details.loan_provider.strip()
        self.engine.store.get_lead(session, lead_id)

        application_name, approval_name = loan_step_names(provider)
        application = self._ensure_template(session, actor, application_name, anchor_offset=1)
        approval = self._ensure_template(session, actor, approval_name, anchor_offset=2)
        self.engine.store.attach_templates(session, lead_id, [application, approval])

        result = self.engine.transition(
            session,
            lead_id,
            application.id,
            actor,
            ACTION_COMPLETE,
            TransitionRequest(remarks=dto.remarks, attachments=dto.attachments, details=dto.details),
        )

        snapshot = self.engine.store.load_snapshot(session, lead_id)
        approval_step = snapshot.find(approval.id)
        logger.info(
            "timeline.loan.initiated",
            extra={"lead_id": str(lead_id), "step_id": str(result.step.id), "action": "loan_initiate", "actor_role": actor.role},
        )
        return LoanWorkflowRead(
            lead_id=lead_id,
            loan_provider=provider,
            application_step=result.step,
            approval_step=to_step_read(approval_step),
        )

    def _ensure_template(self, session: Session, actor: ActorUser, name: str, *, anchor_offset: int) -> StepTemplate:
        existing = self.catalog.find_by_name(session, name)
        if existing is not None:
            return existing

        payment_steps = self.catalog.find_by_dependency_role(session, DEPENDENCY_ROLE_PAYMENT)
        position = payment_steps[0].order_index + anchor_offset if payment_steps else None
        return self.catalog.stage_insert(
            session,
            actor,
            StepTemplateCreate(
                name=name,
                allowed_roles=LOAN_STEP_ROLES,
                remarks_required=False,
                attachments_allowed=True,
                dependency_role=DEPENDENCY_ROLE_LOAN,
            ),
            position=position,
        )


loan_workflow = LoanWorkflow()
