from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from solarcrm.core.rbac import ROLE_ADMIN, ActorUser, require_roles
from solarcrm.errors import InvalidTransition, NotFoundError, ValidationFailed
from solarcrm.services.activity_log import write_activity
from solarcrm.timeline.models import (
    DEPENDENCY_ROLE_CLOSURE,
    DEPENDENCY_ROLE_INSTALLATION,
    DEPENDENCY_ROLE_LOAN,
    DEPENDENCY_ROLE_NET_METER,
    DEPENDENCY_ROLE_NONE,
    DEPENDENCY_ROLE_PAYMENT,
    DEPENDENCY_ROLE_SUBSIDY,
    LeadStepInstance,
    StepTemplate,
    StepTemplateDocument,
)
from solarcrm.timeline.schemas import StepTemplateCreate, StepTemplateRead, StepTemplateUpdate
from solarcrm.timeline.seed import default_step_templates


logger = logging.getLogger("solarcrm.timeline")

# first match wins; "Net Meter Installation" must classify as net_meter, and
# "Payment/Loan Processing" as payment
_NAME_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("closure", DEPENDENCY_ROLE_CLOSURE),
    ("net meter", DEPENDENCY_ROLE_NET_METER),
    ("subsidy", DEPENDENCY_ROLE_SUBSIDY),
    ("payment", DEPENDENCY_ROLE_PAYMENT),
    ("loan", DEPENDENCY_ROLE_LOAN),
    ("installation", DEPENDENCY_ROLE_INSTALLATION),
)


def classify_step_name(name: str) -> str:
    """Derive a template's dependency role from its name.

    Runs once when the template is created, so provider-specific steps such as
    "Loan Approval - SBI" bind to the loan rule without the resolver ever looking at names.
    """
    lowered = name.lower()
    for keyword, role in _NAME_KEYWORDS:
        if keyword in lowered:
            return role
    return DEPENDENCY_ROLE_NONE


@dataclass(slots=True, eq=False)
class StepTemplateCatalog:
    def list_templates(self, session: Session) -> list[StepTemplateRead]:
        return [StepTemplateRead.model_validate(row) for row in self.ordered_templates(session)]

    def get_template(self, session: Session, template_id: uuid.UUID) -> StepTemplate:
        template = session.get(StepTemplate, template_id)
        if template is None:
            raise NotFoundError("step template not found", details={"template_id": str(template_id)})
        return template

    def find_by_name(self, session: Session, name: str) -> StepTemplate | None:
        return session.scalar(select(StepTemplate).where(StepTemplate.name == name))

    def find_by_dependency_role(self, session: Session, dependency_role: str) -> list[StepTemplate]:
        return list(
            session.scalars(
                select(StepTemplate).where(StepTemplate.dependency_role == dependency_role).order_by(StepTemplate.order_index)
            )
        )

    def create_template(self, session: Session, actor: ActorUser, dto: StepTemplateCreate) -> StepTemplateRead:
        require_roles(actor, ROLE_ADMIN)
        template = self.stage_insert(session, actor, dto, position=None)
        session.commit()
        session.refresh(template)
        return StepTemplateRead.model_validate(template)

    def insert_template(self, session: Session, actor: ActorUser, dto: StepTemplateCreate, position: int) -> StepTemplateRead:
        require_roles(actor, ROLE_ADMIN)
        template = self.stage_insert(session, actor, dto, position=position)
        session.commit()
        session.refresh(template)
        return StepTemplateRead.model_validate(template)

    def stage_insert(
        self,
        session: Session,
        actor: ActorUser,
        dto: StepTemplateCreate,
        *,
        position: int | None,
    ) -> StepTemplate:
        """Add a template at ``position`` (1-based, appended when ``None``) without committing."""
        if self.find_by_name(session, dto.name) is not None:
            raise ValidationFailed("step template name already exists", missing=[f"unique name: {dto.name}"])

        ordered = self.ordered_templates(session)
        if position is None or position > len(ordered) + 1:
            position = len(ordered) + 1

        template = StepTemplate(
            name=dto.name,
            order_index=position,
            allowed_roles=list(dto.allowed_roles),
            remarks_required=dto.remarks_required,
            attachments_allowed=dto.attachments_allowed or dto.attachments_required,
            attachments_required=dto.attachments_required,
            customer_upload=dto.customer_upload,
            dependency_role=dto.dependency_role or classify_step_name(dto.name),
            advances_status_to=dto.advances_status_to,
        )
        template.required_documents = [
            StepTemplateDocument(category=category) for category in dict.fromkeys(dto.required_document_categories)
        ]

        ordered.insert(position - 1, template)
        self._renumber(session, ordered, pending=template)

        write_activity(
            session,
            user_id=actor.user_id,
            action="step_template_created",
            entity_type="step_template",
            entity_id=str(template.id),
            new_value=self._snapshot(template),
            correlation_id=actor.correlation_id,
        )
        logger.info(
            "timeline.catalog.template_created",
            extra={"step_id": str(template.id), "action": "template_create", "actor_role": actor.role},
        )
        return template

    def reorder(self, session: Session, actor: ActorUser, template_ids: list[uuid.UUID]) -> list[StepTemplateRead]:
        require_roles(actor, ROLE_ADMIN)
        ordered = self.ordered_templates(session)
        by_id = {row.id: row for row in ordered}
        if len(template_ids) != len(by_id) or set(template_ids) != set(by_id):
            missing = sorted(str(template_id) for template_id in set(by_id) - set(template_ids))
            unknown = sorted(str(template_id) for template_id in set(template_ids) - set(by_id))
            raise ValidationFailed(
                "reorder must list every template exactly once",
                missing=[f"template {value}" for value in missing] + [f"unknown template {value}" for value in unknown],
            )

        before = [str(row.id) for row in ordered]
        self._renumber(session, [by_id[template_id] for template_id in template_ids])
        write_activity(
            session,
            user_id=actor.user_id,
            action="step_templates_reordered",
            entity_type="step_template",
            entity_id=None,
            old_value={"order": before},
            new_value={"order": [str(template_id) for template_id in template_ids]},
            correlation_id=actor.correlation_id,
        )
        session.commit()
        return self.list_templates(session)

    def update_template(
        self,
        session: Session,
        actor: ActorUser,
        template_id: uuid.UUID,
        dto: StepTemplateUpdate,
    ) -> StepTemplateRead:
        require_roles(actor, ROLE_ADMIN)
        template = self.get_template(session, template_id)
        changes = dto.model_dump(exclude_unset=True)
        if not changes:
            return StepTemplateRead.model_validate(template)

        if self._is_referenced(session, template.id):
            raise InvalidTransition(
                "step template is referenced by lead timelines and can no longer change",
                details={"template_id": str(template.id)},
            )

        before = self._snapshot(template)
        for field_name, value in changes.items():
            setattr(template, field_name, value)
        if template.attachments_required:
            template.attachments_allowed = True

        write_activity(
            session,
            user_id=actor.user_id,
            action="step_template_updated",
            entity_type="step_template",
            entity_id=str(template.id),
            old_value=before,
            new_value=self._snapshot(template),
            correlation_id=actor.correlation_id,
        )
        session.commit()
        session.refresh(template)
        return StepTemplateRead.model_validate(template)

    def set_required_documents(
        self,
        session: Session,
        actor: ActorUser,
        template_id: uuid.UUID,
        categories: list[str],
    ) -> StepTemplateRead:
        require_roles(actor, ROLE_ADMIN)
        template = self.get_template(session, template_id)
        before = template.required_document_categories
        wanted = [category.strip() for category in dict.fromkeys(categories) if category.strip()]

        template.required_documents = [row for row in template.required_documents if row.category in wanted]
        present = {row.category for row in template.required_documents}
        for category in wanted:
            if category not in present:
                template.required_documents.append(StepTemplateDocument(category=category))

        write_activity(
            session,
            user_id=actor.user_id,
            action="step_template_documents_updated",
            entity_type="step_template",
            entity_id=str(template.id),
            old_value={"required_document_categories": before},
            new_value={"required_document_categories": sorted(wanted)},
            correlation_id=actor.correlation_id,
        )
        session.commit()
        session.refresh(template)
        return StepTemplateRead.model_validate(template)

    def ensure_default_catalog(self, session: Session) -> int:
        """Seed the default timeline when the catalog is empty; returns the number of templates created."""
        existing = session.scalar(select(func.count()).select_from(StepTemplate)) or 0
        if existing:
            return 0

        rows = default_step_templates()
        for index, row in enumerate(rows, start=1):
            template = StepTemplate(
                name=row["name"],
                order_index=index,
                allowed_roles=list(row["allowed_roles"]),
                remarks_required=row.get("remarks_required", False),
                attachments_allowed=row.get("attachments_allowed", False),
                attachments_required=row.get("attachments_required", False),
                customer_upload=row.get("customer_upload", False),
                dependency_role=classify_step_name(row["name"]),
                advances_status_to=row.get("advances_status_to"),
            )
            template.required_documents = [
                StepTemplateDocument(category=category) for category in row.get("required_document_categories", [])
            ]
            session.add(template)
        session.commit()
        logger.info("timeline.catalog.seeded", extra={"action": "seed", "outcome": "applied"})
        return len(rows)

    def ordered_templates(self, session: Session) -> list[StepTemplate]:
        return list(
            session.scalars(
                select(StepTemplate).options(selectinload(StepTemplate.required_documents)).order_by(StepTemplate.order_index)
            )
        )

    def _renumber(self, session: Session, ordered: list[StepTemplate], pending: StepTemplate | None = None) -> None:
        # order_index is unique, so park existing rows on negative indexes before
        # writing the final contiguous sequence
        for index, template in enumerate(ordered, start=1):
            if template is not pending:
                template.order_index = -index
        session.flush()
        if pending is not None:
            session.add(pending)
        for index, template in enumerate(ordered, start=1):
            template.order_index = index
        session.flush()

    def _is_referenced(self, session: Session, template_id: uuid.UUID) -> bool:
        count = session.scalar(
            select(func.count()).select_from(LeadStepInstance).where(LeadStepInstance.step_template_id == template_id)
        )
        return bool(count)

    @staticmethod
    def _snapshot(template: StepTemplate) -> dict[str, Any]:
        return {
            "name": template.name,
            "order_index": template.order_index,
            "allowed_roles": list(template.allowed_roles or []),
            "remarks_required": template.remarks_required,
            "attachments_allowed": template.attachments_allowed,
            "attachments_required": template.attachments_required,
            "customer_upload": template.customer_upload,
            "dependency_role": template.dependency_role,
            "advances_status_to": template.advances_status_to,
            "required_document_categories": template.required_document_categories,
        }


step_catalog = StepTemplateCatalog()
