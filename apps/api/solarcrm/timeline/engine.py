from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from solarcrm import events
from solarcrm.core.rbac import ActorUser
from solarcrm.errors import (
    ConflictError,
    DependencyNotSatisfied,
    InvalidTransition,
    NotFoundError,
    ProjectClosedError,
    RoleNotPermitted,
    TimelineError,
)
from solarcrm.leads.models import Lead
from solarcrm.metrics import observe_timeline_transition
from solarcrm.otel import timeline_span
from solarcrm.services.activity_log import write_activity
from solarcrm.timeline.capability import OverrideContext, is_valid_capability
from solarcrm.timeline.dependencies import DependencyResolver, dependency_resolver
from solarcrm.timeline.models import STEP_STATUS_COMPLETED, STEP_STATUS_PENDING, STEP_STATUS_UPCOMING, LeadStepInstance
from solarcrm.timeline.schemas import TransitionRequest, TransitionResult
from solarcrm.timeline.status import recompute_lead_status
from solarcrm.timeline.store import LeadStepStore, TimelineSnapshot, lead_step_store, to_step_read, utcnow
from solarcrm.timeline.validation import ValidationPolicy, validation_policy


logger = logging.getLogger("solarcrm.timeline")

ACTION_COMPLETE = "complete"
ACTION_REOPEN = "reopen"
ACTION_SKIP = "skip"
ENGINE_ACTIONS = (ACTION_COMPLETE, ACTION_REOPEN, ACTION_SKIP)

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"

OVERRIDE_REMARK_PREFIX = "[admin override]"
SKIP_REMARK_PREFIX = "[skipped by admin override]"


@dataclass(slots=True)
class StagedChange:
    """Writes staged for one step inside the caller's unit of work, plus what to announce after commit."""

    step: LeadStepInstance
    action: str
    outcome: str
    pending_events: list[dict[str, Any]] = field(default_factory=list)


def _step_values(step: LeadStepInstance) -> dict[str, Any]:
    return {
        "status": step.status,
        "completed_by": step.completed_by,
        "completed_at": step.completed_at.isoformat() if step.completed_at else None,
        "remarks": step.remarks,
        "details": step.details,
        "attachments": list(step.attachments or []),
        "row_version": step.row_version,
    }


def _payload_details(payload: TransitionRequest) -> dict[str, Any] | None:
    if payload.details is None:
        return None
    return payload.details.model_dump(mode="json")


def _same_payload(step: LeadStepInstance, payload: TransitionRequest) -> bool:
    return (
        (step.remarks or "").strip() == (payload.remarks or "").strip()
        and (step.details or None) == _payload_details(payload)
        and list(step.attachments or []) == list(payload.attachments)
    )


def _override_remarks(prefix: str, justification: str, remarks: str | None) -> str:
    text = f"{prefix} {justification.strip()}"
    if remarks and remarks.strip():
        text = f"{text} | {remarks.strip()}"
    return text


class TimelineTransitionEngine:
    """State machine for one lead's steps.

    A call loads the lead and all of its steps, decides in memory, then writes each touched
    row conditionally on its ``row_version``. Guards run in a fixed order: closed project,
    role, concurrency token, dependencies, duplicate detection, validation. An
    ``OverrideContext`` carrying a granted ``AdminCapability`` skips the role, dependency and
    validation guards; nothing else does.
    """

    def __init__(
        self,
        store: LeadStepStore = lead_step_store,
        resolver: DependencyResolver = dependency_resolver,
        policy: ValidationPolicy = validation_policy,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.policy = policy

    def transition(
        self,
        session: Session,
        lead_id: uuid.UUID,
        step_id: uuid.UUID,
        actor: ActorUser,
        action: str,
        payload: TransitionRequest | None = None,
        *,
        expected_row_version: int | None = None,
        override: OverrideContext | None = None,
    ) -> TransitionResult:
        payload = payload or TransitionRequest()
        if expected_row_version is None:
            expected_row_version = payload.expected_row_version

        started = time.perf_counter()
        log_fields = {
            "lead_id": str(lead_id),
            "step_id": str(step_id),
            "action": action,
            "actor_role": actor.role,
        }
        with timeline_span(
            "timeline.transition",
            lead_id=lead_id,
            step_id=step_id,
            action=action,
            actor_role=actor.role,
            admin_override=override is not None,
        ) as span:
            try:
                snapshot = self.store.load_snapshot(session, lead_id)
                step = snapshot.find(step_id)
                if step is None:
                    raise NotFoundError("step not found on this lead", details={"lead_id": str(lead_id), "step_id": str(step_id)})

                change = self.stage(
                    session,
                    snapshot,
                    step,
                    actor,
                    action,
                    payload,
                    expected_row_version=expected_row_version,
                    override=override,
                )
                lead_events: list[dict[str, Any]] = []
                if change.outcome == OUTCOME_APPLIED:
                    lead_events = self.settle(session, snapshot, actor, allow_regression=False)
                session.commit()
            except TimelineError as exc:
                session.rollback()
                observe_timeline_transition(action, exc.code, time.perf_counter() - started)
                logger.warning("timeline.transition.rejected", extra={**log_fields, **exc.to_log_fields()})
                raise
            except Exception:
                session.rollback()
                raise

            span.set_attribute("outcome", change.outcome)

        for envelope in change.pending_events + lead_events:
            events.publish(envelope)

        observe_timeline_transition(action, change.outcome, time.perf_counter() - started)
        logger.info("timeline.transition.applied", extra={**log_fields, "outcome": change.outcome})

        session.refresh(snapshot.lead)
        session.refresh(change.step)
        return TransitionResult(
            action=action,
            outcome=change.outcome,
            step=to_step_read(change.step),
            lead_status=snapshot.lead.status,
            lead_closed=snapshot.lead.closed,
        )

    def stage(
        self,
        session: Session,
        snapshot: TimelineSnapshot,
        step: LeadStepInstance,
        actor: ActorUser,
        action: str,
        payload: TransitionRequest,
        *,
        expected_row_version: int | None = None,
        override: OverrideContext | None = None,
    ) -> StagedChange:
        """Apply one step transition inside the caller's unit of work. Never commits."""
        if override is not None and not is_valid_capability(override.capability, actor):
            raise RoleNotPermitted("override requested without a granted admin capability")
        if snapshot.lead.closed:
            raise ProjectClosedError("project is closed; reopen it before changing steps", details={"lead_id": str(snapshot.lead.id)})
        if action not in ENGINE_ACTIONS:
            raise InvalidTransition(f"unknown action '{action}'", details={"allowed_actions": list(ENGINE_ACTIONS)})
        if action == ACTION_SKIP and override is None:
            raise RoleNotPermitted("skipping a step requires an admin override")

        template = step.step_template
        if override is None and actor.role not in (template.allowed_roles or []):
            raise RoleNotPermitted(
                f"role '{actor.role}' may not act on step '{template.name}'",
                details={"allowed_roles": list(template.allowed_roles or []), "actor_role": actor.role},
            )

        if expected_row_version is not None and expected_row_version != step.row_version:
            raise ConflictError(
                "step was modified since it was read; refresh and retry",
                details={"step_id": str(step.id), "expected_row_version": expected_row_version, "row_version": step.row_version},
            )

        if action == ACTION_REOPEN:
            return self._reopen(session, snapshot, step, actor, override)
        return self._complete(session, snapshot, step, actor, action, payload, override)

    def settle(self, session: Session, snapshot: TimelineSnapshot, actor: ActorUser, *, allow_regression: bool) -> list[dict[str, Any]]:
        """Recompute the lead's aggregate status and closure flag after staged step changes."""
        lead = snapshot.lead
        states = snapshot.states()
        new_status = recompute_lead_status(lead.status, states, allow_regression=allow_regression, floor=lead.manual_status)
        closure = next((state for state in states if state.is_closure), None)
        new_closed = lead.closed or bool(closure is not None and closure.is_completed)
        return self.write_lead_state(session, lead, actor, status=new_status, closed=new_closed)

    def write_lead_state(
        self,
        session: Session,
        lead: Lead,
        actor: ActorUser,
        *,
        status: str,
        closed: bool,
        override: OverrideContext | None = None,
    ) -> list[dict[str, Any]]:
        if status == lead.status and closed == lead.closed:
            return []

        before = {"status": lead.status, "closed": lead.closed}
        self.store.update_lead(session, lead, expected_row_version=lead.row_version, values={"status": status, "closed": closed})
        after = {"status": lead.status, "closed": lead.closed}

        pending: list[dict[str, Any]] = []
        if before["status"] != after["status"]:
            write_activity(
                session,
                user_id=actor.user_id,
                action="lead_status_changed",
                entity_type="lead",
                entity_id=str(lead.id),
                lead_id=lead.id,
                old_value={"status": before["status"]},
                new_value={"status": after["status"], "admin_override": override is not None},
                correlation_id=actor.correlation_id,
            )
            pending.append(
                {
                    "event_type": "lead.status_changed",
                    "lead_id": str(lead.id),
                    "old_status": before["status"],
                    "new_status": after["status"],
                    "actor_user_id": actor.user_id,
                    "correlation_id": actor.correlation_id,
                }
            )
        if before["closed"] != after["closed"]:
            write_activity(
                session,
                user_id=actor.user_id,
                action="project_closed" if after["closed"] else "project_reopened",
                entity_type="lead",
                entity_id=str(lead.id),
                lead_id=lead.id,
                old_value={"closed": before["closed"]},
                new_value={"closed": after["closed"], "admin_override": override is not None},
                correlation_id=actor.correlation_id,
            )
            pending.append(
                {
                    "event_type": "lead.closed" if after["closed"] else "lead.reopened",
                    "lead_id": str(lead.id),
                    "actor_user_id": actor.user_id,
                    "correlation_id": actor.correlation_id,
                }
            )
        return pending

    def _complete(
        self,
        session: Session,
        snapshot: TimelineSnapshot,
        step: LeadStepInstance,
        actor: ActorUser,
        action: str,
        payload: TransitionRequest,
        override: OverrideContext | None,
    ) -> StagedChange:
        template = step.step_template
        if override is None:
            eligibility = self.resolver.evaluate(snapshot.states(), step.id)
            if not eligibility.eligible:
                raise DependencyNotSatisfied(
                    f"step '{template.name}' is blocked by: {', '.join(eligibility.blocking_steps)}",
                    blocking_steps=eligibility.blocking_steps,
                )

        if step.status == STEP_STATUS_COMPLETED:
            if override is None and action == ACTION_COMPLETE and _same_payload(step, payload):
                return self._duplicate(session, snapshot, step, actor)
            raise InvalidTransition(
                f"step '{template.name}' is already completed",
                details={"step_id": str(step.id), "status": step.status},
            )

        if override is None:
            self.policy.check(session, snapshot.lead.id, template, payload)

        before = _step_values(step)
        if override is None:
            remarks = (payload.remarks or "").strip() or None
        elif action == ACTION_SKIP:
            remarks = _override_remarks(SKIP_REMARK_PREFIX, override.justification, payload.remarks)
        else:
            remarks = _override_remarks(OVERRIDE_REMARK_PREFIX, override.justification, payload.remarks)

        self.store.update_step(
            session,
            step,
            expected_row_version=step.row_version,
            values={
                "status": STEP_STATUS_COMPLETED,
                "completed_by": actor.user_id,
                "completed_at": utcnow(),
                "remarks": remarks,
                "details": _payload_details(payload),
                "attachments": list(payload.attachments),
            },
        )
        self._promote_next(session, snapshot, step)

        self._log_step_change(
            session,
            snapshot,
            step,
            actor,
            action="step_skipped" if action == ACTION_SKIP else "step_completed",
            before=before,
            override=override,
        )
        return StagedChange(
            step=step,
            action=action,
            outcome=OUTCOME_APPLIED,
            pending_events=[self._step_event(snapshot, step, actor, action, override)],
        )

    def _reopen(
        self,
        session: Session,
        snapshot: TimelineSnapshot,
        step: LeadStepInstance,
        actor: ActorUser,
        override: OverrideContext | None,
    ) -> StagedChange:
        if step.status != STEP_STATUS_COMPLETED:
            raise InvalidTransition(
                f"step '{step.step_template.name}' is not completed",
                details={"step_id": str(step.id), "status": step.status},
            )

        before = _step_values(step)
        # prior remarks survive only in the activity log
        self.store.update_step(
            session,
            step,
            expected_row_version=step.row_version,
            values={
                "status": STEP_STATUS_PENDING,
                "completed_by": None,
                "completed_at": None,
                "remarks": None,
                "details": None,
                "attachments": [],
            },
        )
        self._log_step_change(session, snapshot, step, actor, action="step_reopened", before=before, override=override)
        return StagedChange(
            step=step,
            action=ACTION_REOPEN,
            outcome=OUTCOME_APPLIED,
            pending_events=[self._step_event(snapshot, step, actor, ACTION_REOPEN, override)],
        )

    def _duplicate(self, session: Session, snapshot: TimelineSnapshot, step: LeadStepInstance, actor: ActorUser) -> StagedChange:
        write_activity(
            session,
            user_id=actor.user_id,
            action="duplicate_attempt",
            entity_type="lead_step",
            entity_id=str(step.id),
            lead_id=snapshot.lead.id,
            old_value=None,
            new_value={"step_name": step.step_template.name, "attempted_action": ACTION_COMPLETE, "row_version": step.row_version},
            correlation_id=actor.correlation_id,
        )
        return StagedChange(step=step, action=ACTION_COMPLETE, outcome=OUTCOME_DUPLICATE)

    def _promote_next(self, session: Session, snapshot: TimelineSnapshot, step: LeadStepInstance) -> None:
        following = snapshot.next_after(step)
        if following is not None and following.status == STEP_STATUS_UPCOMING:
            self.store.update_step(
                session,
                following,
                expected_row_version=following.row_version,
                values={"status": STEP_STATUS_PENDING},
            )

    def _log_step_change(
        self,
        session: Session,
        snapshot: TimelineSnapshot,
        step: LeadStepInstance,
        actor: ActorUser,
        *,
        action: str,
        before: dict[str, Any],
        override: OverrideContext | None,
    ) -> None:
        after = _step_values(step)
        after["step_name"] = step.step_template.name
        if override is not None:
            after.update(
                {
                    "admin_override": True,
                    "override_action": override.override_action,
                    "step_action": action,
                    "justification": override.justification,
                }
            )
            action = "admin_override"
        write_activity(
            session,
            user_id=actor.user_id,
            action=action,
            entity_type="lead_step",
            entity_id=str(step.id),
            lead_id=snapshot.lead.id,
            old_value=before,
            new_value=after,
            correlation_id=actor.correlation_id,
        )

    @staticmethod
    def _step_event(
        snapshot: TimelineSnapshot,
        step: LeadStepInstance,
        actor: ActorUser,
        action: str,
        override: OverrideContext | None,
    ) -> dict[str, Any]:
        return {
            "event_type": f"timeline.step.{action}",
            "lead_id": str(snapshot.lead.id),
            "step_id": str(step.id),
            "step_name": step.step_template.name,
            "status": step.status,
            "actor_user_id": actor.user_id,
            "actor_role": actor.role,
            "admin_override": override is not None,
            "correlation_id": actor.correlation_id,
        }


timeline_engine = TimelineTransitionEngine()
