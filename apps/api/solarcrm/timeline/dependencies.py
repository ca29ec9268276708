from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from solarcrm.timeline.models import (
    DEPENDENCY_ROLE_CLOSURE,
    DEPENDENCY_ROLE_INSTALLATION,
    DEPENDENCY_ROLE_LOAN,
    DEPENDENCY_ROLE_PAYMENT,
    STEP_STATUS_COMPLETED,
)


@dataclass(frozen=True, slots=True)
class StepState:
    """Read-only view of one step instance, enough to reason about eligibility and status."""

    step_id: uuid.UUID
    name: str
    order_index: int
    dependency_role: str
    status: str
    advances_status_to: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == STEP_STATUS_COMPLETED

    @property
    def is_closure(self) -> bool:
        return self.dependency_role == DEPENDENCY_ROLE_CLOSURE


@dataclass(frozen=True, slots=True)
class DependencyRule:
    """A step tagged ``dependent_role`` needs a completed step tagged with any of ``any_of``.

    ``all_others`` rules instead require every other non-closure step to be completed.
    """

    name: str
    dependent_role: str
    any_of: tuple[str, ...] = ()
    all_others: bool = False


DEFAULT_DEPENDENCY_RULES: tuple[DependencyRule, ...] = (
    DependencyRule(
        name="installation_requires_payment_or_loan",
        dependent_role=DEPENDENCY_ROLE_INSTALLATION,
        any_of=(DEPENDENCY_ROLE_PAYMENT, DEPENDENCY_ROLE_LOAN),
    ),
    DependencyRule(
        name="closure_requires_all_steps",
        dependent_role=DEPENDENCY_ROLE_CLOSURE,
        all_others=True,
    ),
)


@dataclass(frozen=True, slots=True)
class Eligibility:
    eligible: bool
    blocking_steps: list[str] = field(default_factory=list)
    rule: str | None = None


class DependencyResolver:
    """Decides whether a step may complete given the rest of the lead's timeline.

    Rules bind to ``dependency_role`` tags rather than step ids: templates get their tag when
    they are created (from the name when not given explicitly), so steps added later, such as
    per-provider loan steps, satisfy the rules without the rule table changing.
    """

    def __init__(self, rules: Sequence[DependencyRule] = DEFAULT_DEPENDENCY_RULES) -> None:
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[DependencyRule, ...]:
        return self._rules

    def evaluate(self, steps: Sequence[StepState], step_id: uuid.UUID) -> Eligibility:
        target = next((step for step in steps if step.step_id == step_id), None)
        if target is None:
            return Eligibility(eligible=False, blocking_steps=[], rule="unknown_step")

        for rule in self._rules:
            if rule.dependent_role != target.dependency_role:
                continue
            blocking = self._blocking_for(rule, steps, target)
            if blocking:
                return Eligibility(eligible=False, blocking_steps=blocking, rule=rule.name)
        return Eligibility(eligible=True)

    def _blocking_for(self, rule: DependencyRule, steps: Sequence[StepState], target: StepState) -> list[str]:
        others = sorted((step for step in steps if step.step_id != target.step_id), key=lambda step: step.order_index)
        if rule.all_others:
            return [step.name for step in others if not step.is_closure and not step.is_completed]

        providers = [step for step in others if step.dependency_role in rule.any_of]
        if any(step.is_completed for step in providers):
            return []
        if providers:
            return [step.name for step in providers]
        # nothing on this timeline can satisfy the rule yet
        return [f"any {role} step" for role in rule.any_of]


dependency_resolver = DependencyResolver()
