from __future__ import annotations

import uuid
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from solarcrm.errors import ConflictError, InvalidTransition, InvariantViolation, NotFoundError
from solarcrm.leads.models import Lead
from solarcrm.metrics import observe_timeline_conflict
from solarcrm.timeline.dependencies import StepState
from solarcrm.timeline.models import (
    STEP_STATUS_PENDING,
    STEP_STATUS_UPCOMING,
    LeadStepInstance,
    StepTemplate,
)
from solarcrm.timeline.schemas import StepRead


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_step_state(step: LeadStepInstance) -> StepState:
    template = step.step_template
    return StepState(
        step_id=step.id,
        name=template.name,
        order_index=template.order_index,
        dependency_role=template.dependency_role,
        status=step.status,
        advances_status_to=template.advances_status_to,
    )


def to_step_read(step: LeadStepInstance) -> StepRead:
    template = step.step_template
    return StepRead(
        id=step.id,
        lead_id=step.lead_id,
        step_template_id=step.step_template_id,
        name=template.name,
        order_index=template.order_index,
        dependency_role=template.dependency_role,
        allowed_roles=list(template.allowed_roles or []),
        remarks_required=template.remarks_required,
        attachments_allowed=template.attachments_allowed,
        customer_upload=template.customer_upload,
        status=step.status,
        completed_by=step.completed_by,
        completed_at=step.completed_at,
        remarks=step.remarks,
        details=step.details,
        attachments=list(step.attachments or []),
        row_version=step.row_version,
        updated_at=step.updated_at,
    )


@dataclass(slots=True)
class TimelineSnapshot:
    lead: Lead
    steps: list[LeadStepInstance]

    def states(self) -> list[StepState]:
        return [to_step_state(step) for step in self.steps]

    def find(self, step_id: uuid.UUID) -> LeadStepInstance | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        # template ids are accepted too; a lead holds at most one instance per template
        for step in self.steps:
            if step.step_template_id == step_id:
                return step
        return None

    def position_of(self, step: LeadStepInstance) -> int:
        return next(index for index, candidate in enumerate(self.steps) if candidate.id == step.id)

    def next_after(self, step: LeadStepInstance) -> LeadStepInstance | None:
        index = self.position_of(step)
        if index + 1 < len(self.steps):
            return self.steps[index + 1]
        return None


class LeadStepStore:
    """Record-store access for a lead and its materialized steps.

    Every write is a conditional update on ``row_version``; a stale token surfaces as
    ``ConflictError`` and nothing is retried here.
    """

    def get_lead(self, session: Session, lead_id: uuid.UUID) -> Lead:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})
        return lead

    def list_steps(self, session: Session, lead_id: uuid.UUID) -> list[LeadStepInstance]:
        rows = session.scalars(
            select(LeadStepInstance)
            .join(StepTemplate, LeadStepInstance.step_template_id == StepTemplate.id)
            .where(LeadStepInstance.lead_id == lead_id)
            .order_by(StepTemplate.order_index)
        ).unique()
        return list(rows)

    def load_snapshot(self, session: Session, lead_id: uuid.UUID) -> TimelineSnapshot:
        lead = self.get_lead(session, lead_id)
        steps = self.list_steps(session, lead_id)
        self.check_invariants(lead_id, steps)
        return TimelineSnapshot(lead=lead, steps=steps)

    def check_invariants(self, lead_id: uuid.UUID, steps: Sequence[LeadStepInstance]) -> None:
        duplicates = [template_id for template_id, count in Counter(step.step_template_id for step in steps).items() if count > 1]
        if duplicates:
            raise InvariantViolation(
                "lead holds more than one instance of a step template",
                details={"lead_id": str(lead_id), "step_template_ids": sorted(str(value) for value in duplicates)},
            )
        half_completed = [
            str(step.id) for step in steps if (step.completed_at is None) != (step.completed_by is None)
        ]
        if half_completed:
            raise InvariantViolation(
                "completed_at and completed_by must be set together",
                details={"lead_id": str(lead_id), "step_ids": half_completed},
            )

    def initialize_timeline(self, session: Session, lead: Lead, templates: Sequence[StepTemplate]) -> list[LeadStepInstance]:
        """Materialize one step per template: the first pending, the rest upcoming. Flushes, does not commit."""
        existing = self.list_steps(session, lead.id)
        if existing:
            raise InvalidTransition("timeline already initialized for this lead", details={"lead_id": str(lead.id)})

        ordered = sorted(templates, key=lambda template: template.order_index)
        created: list[LeadStepInstance] = []
        for index, template in enumerate(ordered):
            step = LeadStepInstance(
                lead_id=lead.id,
                step_template_id=template.id,
                status=STEP_STATUS_PENDING if index == 0 else STEP_STATUS_UPCOMING,
                attachments=[],
            )
            session.add(step)
            created.append(step)
        session.flush()
        return created

    def attach_templates(self, session: Session, lead_id: uuid.UUID, templates: Sequence[StepTemplate]) -> list[LeadStepInstance]:
        """Add instances for templates the lead does not have yet; existing pairs are left alone."""
        existing = {step.step_template_id for step in self.list_steps(session, lead_id)}
        created: list[LeadStepInstance] = []
        for template in templates:
            if template.id in existing:
                continue
            step = LeadStepInstance(lead_id=lead_id, step_template_id=template.id, status=STEP_STATUS_UPCOMING, attachments=[])
            session.add(step)
            existing.add(template.id)
            created.append(step)
        session.flush()
        return created

    def update_step(
        self,
        session: Session,
        step: LeadStepInstance,
        *,
        expected_row_version: int,
        values: dict[str, Any],
    ) -> LeadStepInstance:
        changes = dict(values)
        changes["updated_at"] = utcnow()
        changes["row_version"] = LeadStepInstance.row_version + 1
        result = session.execute(
            update(LeadStepInstance)
            .where(
                and_(
                    LeadStepInstance.id == step.id,
                    LeadStepInstance.row_version == expected_row_version,
                )
            )
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            observe_timeline_conflict()
            raise ConflictError(
                "step was modified concurrently; refresh and retry",
                details={"step_id": str(step.id), "expected_row_version": expected_row_version},
            )
        session.refresh(step)
        return step

    def update_lead(
        self,
        session: Session,
        lead: Lead,
        *,
        expected_row_version: int,
        values: dict[str, Any],
    ) -> Lead:
        changes = dict(values)
        changes["updated_at"] = utcnow()
        changes["row_version"] = Lead.row_version + 1
        result = session.execute(
            update(Lead)
            .where(and_(Lead.id == lead.id, Lead.row_version == expected_row_version))
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            observe_timeline_conflict()
            raise ConflictError(
                "lead was modified concurrently; refresh and retry",
                details={"lead_id": str(lead.id), "expected_row_version": expected_row_version},
            )
        session.refresh(lead)
        return lead


lead_step_store = LeadStepStore()
