from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from solarcrm import events
from solarcrm.core.config import get_settings
from solarcrm.core.rbac import ActorUser
from solarcrm.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    OverrideFailed,
    ProjectClosedError,
    RoleNotPermitted,
    TimelineError,
    ValidationFailed,
)
from solarcrm.leads.models import LEAD_STATUS_CANCELLED
from solarcrm.metrics import observe_timeline_override
from solarcrm.otel import timeline_span
from solarcrm.services.activity_log import write_activity
from solarcrm.timeline.capability import AdminCapability, OverrideContext, is_valid_capability, mint_admin_capability
from solarcrm.timeline.engine import (
    ACTION_COMPLETE,
    ACTION_REOPEN,
    ACTION_SKIP,
    TimelineTransitionEngine,
    timeline_engine,
)
from solarcrm.timeline.models import STEP_STATUS_COMPLETED, LeadStepInstance
from solarcrm.timeline.schemas import OverrideResult, TransitionRequest, TransitionResult
from solarcrm.timeline.store import TimelineSnapshot, to_step_read


logger = logging.getLogger("solarcrm.timeline")

OVERRIDE_COMPLETE = "complete_step"
OVERRIDE_REOPEN = "reopen_step"
OVERRIDE_SKIP = "skip_step"
OVERRIDE_MOVE_FORWARD = "move_forward"
OVERRIDE_MOVE_BACKWARD = "move_backward"
OVERRIDE_CLOSE_PROJECT = "close_project"
OVERRIDE_REOPEN_PROJECT = "reopen_project"


def _require_justification(justification: str | None) -> str:
    text = (justification or "").strip()
    if not text:
        raise ValidationFailed("admin overrides require a justification", missing=["justification"])
    return text


@dataclass(slots=True, eq=False)
class OverrideAuthority:
    """Admin-only entry point that drives the engine with its guards switched off.

    Each method takes an ``AdminCapability`` from ``grant``, demands a justification, and
    records an ``admin_override`` activity entry. Range moves stage every step in one
    transaction and either commit all of them or none.
    """

    engine: TimelineTransitionEngine = timeline_engine

    def grant(self, actor: ActorUser) -> AdminCapability:
        return mint_admin_capability(actor)

    def complete(
        self,
        session: Session,
        capability: AdminCapability,
        lead_id: uuid.UUID,
        step_id: uuid.UUID,
        justification: str,
        payload: TransitionRequest | None = None,
        *,
        expected_row_version: int | None = None,
    ) -> TransitionResult:
        return self._single(session, capability, lead_id, step_id, ACTION_COMPLETE, OVERRIDE_COMPLETE, justification, payload, expected_row_version)

    def reopen(
        self,
        session: Session,
        capability: AdminCapability,
        lead_id: uuid.UUID,
        step_id: uuid.UUID,
        justification: str,
        *,
        expected_row_version: int | None = None,
    ) -> TransitionResult:
        return self._single(session, capability, lead_id, step_id, ACTION_REOPEN, OVERRIDE_REOPEN, justification, None, expected_row_version)

    def skip(
        self,
        session: Session,
        capability: AdminCapability,
        lead_id: uuid.UUID,
        step_id: uuid.UUID,
        justification: str,
        *,
        expected_row_version: int | None = None,
    ) -> TransitionResult:
        return self._single(session, capability, lead_id, step_id, ACTION_SKIP, OVERRIDE_SKIP, justification, None, expected_row_version)

    def move_forward(
        self,
        session: Session,
        capability: AdminCapability,
        lead_id: uuid.UUID,
        target_step_id: uuid.UUID,
        justification: str,
        *,
        expected_row_versions: dict[uuid.UUID, int] | None = None,
    ) -> OverrideResult:
        """Complete every not-yet-completed step up to and including the target, in order."""

        def select_range(snapshot: TimelineSnapshot, target_index: int) -> list[LeadStepInstance]:
            return [step for step in snapshot.steps[: target_index + 1] if step.status != STEP_STATUS_COMPLETED]

        return self._batch(
            session,
            capability,
            lead_id,
            target_step_id,
            justification,
            override_action=OVERRIDE_MOVE_FORWARD,
            step_action=ACTION_COMPLETE,
            select_range=select_range,
            expected_row_versions=expected_row_versions or {},
            allow_regression=False,
        )

    def move_backward(
        self,
        session: Session,
        capability: AdminCapability,
        lead_id: uuid.UUID,
        target_step_id: uuid.UUID,
        justification: str,
        *,
        expected_row_versions: dict[uuid.UUID, int] | None = None,
    ) -> OverrideResult:
        """Reopen the target and every completed step after it, in order."""

        def select_range(snapshot: TimelineSnapshot, target_index: int) -> list[LeadStepInstance]:
            return [step for step in snapshot.steps[target_index:] if step.status == STEP_STATUS_COMPLETED]

        return self._batch(
            session,
            capability,
            lead_id,
            target_step_id,
            justification,
            override_action=OVERRIDE_MOVE_BACKWARD,
            step_action=ACTION_REOPEN,
            select_range=select_range,
            expected_row_versions=expected_row_versions or {},
            allow_regression=True,
        )

    def close_project(
        self,
        session: Session,
        capability: AdminCapability,
        lead_id: uuid.UUID,
        justification: str,
        *,
        expected_row_version: int | None = None,
    ) -> OverrideResult:
        actor = self._actor(capability)
        reason = _require_justification(justification)
        context = OverrideContext(capability=capability, justification=reason, override_action=OVERRIDE_CLOSE_PROJECT)

        def apply(snapshot: TimelineSnapshot) -> tuple[list[LeadStepInstance], list[dict[str, Any]]]:
            if snapshot.lead.closed:
                raise ProjectClosedError("project is already closed", details={"lead_id": str(lead_id)})
            self._check_lead_version(snapshot, expected_row_version)
            touched: list[LeadStepInstance] = []
            pending: list[dict[str, Any]] = []
            closure = next((step for step in snapshot.steps if step.step_template.is_closure), None)
            if closure is not None and closure.status != STEP_STATUS_COMPLETED:
                change = self.engine.stage(session, snapshot, closure, actor, ACTION_COMPLETE, TransitionRequest(), override=context)
                touched.append(change.step)
                pending.extend(change.pending_events)
            pending.extend(
                self.engine.write_lead_state(session, snapshot.lead, actor, status=snapshot.lead.status, closed=True, override=context)
            )
            return touched, pending

        return self._run_project_override(session, actor, lead_id, OVERRIDE_CLOSE_PROJECT, reason, apply)

    def reopen_project(
        self,
        session: Session,
        capability: AdminCapability,
        lead_id: uuid.UUID,
        justification: str,
        *,
        expected_row_version: int | None = None,
    ) -> OverrideResult:
        """Clear the closed flag, return the closure step to pending and restore the ongoing status."""
        actor = self._actor(capability)
        reason = _require_justification(justification)
        context = OverrideContext(capability=capability, justification=reason, override_action=OVERRIDE_REOPEN_PROJECT)

        def apply(snapshot: TimelineSnapshot) -> tuple[list[LeadStepInstance], list[dict[str, Any]]]:
            lead = snapshot.lead
            if not lead.closed:
                raise InvalidTransition("project is not closed", details={"lead_id": str(lead_id)})
            self._check_lead_version(snapshot, expected_row_version)

            restored = lead.status
            if lead.status != LEAD_STATUS_CANCELLED:
                restored = get_settings().timeline_closure_reopen_status
            pending = self.engine.write_lead_state(session, lead, actor, status=restored, closed=False, override=context)

            # the lead is open again, so the closure step can go back through the engine
            touched: list[LeadStepInstance] = []
            for step in snapshot.steps:
                if step.step_template.is_closure and step.status == STEP_STATUS_COMPLETED:
                    change = self.engine.stage(session, snapshot, step, actor, ACTION_REOPEN, TransitionRequest(), override=context)
                    touched.append(change.step)
                    pending.extend(change.pending_events)
            return touched, pending

        return self._run_project_override(session, actor, lead_id, OVERRIDE_REOPEN_PROJECT, reason, apply)

    def _single(
        self,
        session: Session,
        capability: AdminCapability,
        lead_id: uuid.UUID,
        step_id: uuid.UUID,
        step_action: str,
        override_action: str,
        justification: str,
        payload: TransitionRequest | None,
        expected_row_version: int | None,
    ) -> TransitionResult:
        actor = self._actor(capability)
        reason = _require_justification(justification)
        context = OverrideContext(capability=capability, justification=reason, override_action=override_action)
        try:
            result = self.engine.transition(
                session,
                lead_id,
                step_id,
                actor,
                step_action,
                payload,
                expected_row_version=expected_row_version,
                override=context,
            )
        except TimelineError as exc:
            observe_timeline_override(override_action, exc.code)
            logger.warning(
                "timeline.override.failed",
                extra={"lead_id": str(lead_id), "step_id": str(step_id), "action": override_action, "actor_role": actor.role, **exc.to_log_fields()},
            )
            raise

        observe_timeline_override(override_action, result.outcome)
        logger.info(
            "timeline.override.applied",
            extra={"lead_id": str(lead_id), "step_id": str(step_id), "action": override_action, "actor_role": actor.role, "outcome": result.outcome},
        )
        return result

    def _batch(
        self,
        session: Session,
        capability: AdminCapability,
        lead_id: uuid.UUID,
        target_step_id: uuid.UUID,
        justification: str,
        *,
        override_action: str,
        step_action: str,
        select_range: Callable[[TimelineSnapshot, int], list[LeadStepInstance]],
        expected_row_versions: dict[uuid.UUID, int],
        allow_regression: bool,
    ) -> OverrideResult:
        actor = self._actor(capability)
        reason = _require_justification(justification)
        context = OverrideContext(capability=capability, justification=reason, override_action=override_action)
        log_fields = {"lead_id": str(lead_id), "step_id": str(target_step_id), "action": override_action, "actor_role": actor.role}

        failing_step: str | None = None
        with timeline_span("timeline.override", lead_id=lead_id, step_id=target_step_id, action=override_action, actor_role=actor.role):
            try:
                snapshot = self.engine.store.load_snapshot(session, lead_id)
                if snapshot.lead.closed:
                    raise ProjectClosedError("project is closed; reopen it before moving steps", details={"lead_id": str(lead_id)})
                target = snapshot.find(target_step_id)
                if target is None:
                    raise NotFoundError("step not found on this lead", details={"lead_id": str(lead_id), "step_id": str(target_step_id)})

                in_range = select_range(snapshot, snapshot.position_of(target))
                if not in_range:
                    raise InvalidTransition(
                        f"nothing to {override_action.replace('_', ' ')} up to step '{target.step_template.name}'",
                        details={"step_id": str(target.id)},
                    )

                # tokens are checked against the state the caller read, before this batch touched anything
                read_versions = {step.id: step.row_version for step in snapshot.steps}
                pending: list[dict[str, Any]] = []
                for step in in_range:
                    failing_step = str(step.id)
                    expected = expected_row_versions.get(step.id)
                    if expected is not None and expected != read_versions[step.id]:
                        raise ConflictError(
                            "step was modified since it was read; refresh and retry",
                            details={"step_id": str(step.id), "expected_row_version": expected, "row_version": read_versions[step.id]},
                        )
                    change = self.engine.stage(session, snapshot, step, actor, step_action, TransitionRequest(), override=context)
                    pending.extend(change.pending_events)
                failing_step = None

                pending.extend(self.engine.settle(session, snapshot, actor, allow_regression=allow_regression))
                write_activity(
                    session,
                    user_id=actor.user_id,
                    action="admin_override",
                    entity_type="lead",
                    entity_id=str(lead_id),
                    lead_id=lead_id,
                    old_value=None,
                    new_value={
                        "admin_override": True,
                        "override_action": override_action,
                        "justification": reason,
                        "target_step_id": str(target.id),
                        "step_ids": [str(step.id) for step in in_range],
                    },
                    correlation_id=actor.correlation_id,
                )
                session.commit()
            except TimelineError as exc:
                session.rollback()
                observe_timeline_override(override_action, "failed")
                logger.warning("timeline.override.failed", extra={**log_fields, **exc.to_log_fields()})
                if failing_step is None:
                    raise
                raise OverrideFailed(
                    f"{override_action} rolled back: {exc.message}",
                    step_id=failing_step,
                    cause=exc,
                ) from exc
            except Exception:
                session.rollback()
                raise

        for envelope in pending:
            events.publish(envelope)
        observe_timeline_override(override_action, "applied")
        logger.info("timeline.override.applied", extra={**log_fields, "outcome": "applied"})
        return self._result(session, lead_id, override_action, in_range)

    def _run_project_override(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: uuid.UUID,
        override_action: str,
        reason: str,
        apply: Callable[[TimelineSnapshot], tuple[list[LeadStepInstance], list[dict[str, Any]]]],
    ) -> OverrideResult:
        log_fields = {"lead_id": str(lead_id), "action": override_action, "actor_role": actor.role}
        with timeline_span("timeline.override", lead_id=lead_id, action=override_action, actor_role=actor.role):
            try:
                snapshot = self.engine.store.load_snapshot(session, lead_id)
                touched, pending = apply(snapshot)
                write_activity(
                    session,
                    user_id=actor.user_id,
                    action="admin_override",
                    entity_type="lead",
                    entity_id=str(lead_id),
                    lead_id=lead_id,
                    old_value=None,
                    new_value={"admin_override": True, "override_action": override_action, "justification": reason},
                    correlation_id=actor.correlation_id,
                )
                session.commit()
            except TimelineError as exc:
                session.rollback()
                observe_timeline_override(override_action, exc.code)
                logger.warning("timeline.override.failed", extra={**log_fields, **exc.to_log_fields()})
                raise
            except Exception:
                session.rollback()
                raise

        for envelope in pending:
            events.publish(envelope)
        observe_timeline_override(override_action, "applied")
        logger.info("timeline.override.applied", extra={**log_fields, "outcome": "applied"})
        return self._result(session, lead_id, override_action, touched)

    def _result(self, session: Session, lead_id: uuid.UUID, override_action: str, touched: list[LeadStepInstance]) -> OverrideResult:
        lead = self.engine.store.get_lead(session, lead_id)
        session.refresh(lead)
        steps = []
        for step in touched:
            session.refresh(step)
            steps.append(to_step_read(step))
        return OverrideResult(lead_id=lead.id, action=override_action, steps=steps, lead_status=lead.status, lead_closed=lead.closed)

    @staticmethod
    def _actor(capability: AdminCapability) -> ActorUser:
        if not isinstance(capability, AdminCapability) or not is_valid_capability(capability, capability.actor):
            raise RoleNotPermitted("a granted admin capability is required")
        return capability.actor

    @staticmethod
    def _check_lead_version(snapshot: TimelineSnapshot, expected_row_version: int | None) -> None:
        if expected_row_version is not None and expected_row_version != snapshot.lead.row_version:
            raise ConflictError(
                "lead was modified since it was read; refresh and retry",
                details={"lead_id": str(snapshot.lead.id), "expected_row_version": expected_row_version},
            )


override_authority = OverrideAuthority()
