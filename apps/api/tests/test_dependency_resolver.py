from __future__ import annotations

import uuid
from dataclasses import replace

from solarcrm.timeline.dependencies import DependencyResolver, DependencyRule, StepState, dependency_resolver


def _state(name: str, order_index: int, dependency_role: str = "none", status: str = "upcoming") -> StepState:
    return StepState(step_id=uuid.uuid4(), name=name, order_index=order_index, dependency_role=dependency_role, status=status)


def test_steps_without_rules_are_always_eligible() -> None:
    steps = [_state("Lead Created", 1), _state("Site Survey", 2)]
    assert dependency_resolver.evaluate(steps, steps[1].step_id).eligible is True


def test_installation_is_satisfied_by_any_completed_loan_step() -> None:
    payment = _state("Payment/Loan Processing", 1, "payment")
    application = _state("Loan Application - SBI", 2, "loan", status="completed")
    installation = _state("Installation Scheduling", 3, "installation")

    eligibility = dependency_resolver.evaluate([payment, application, installation], installation.step_id)

    assert eligibility.eligible is True
    assert eligibility.blocking_steps == []


def test_installation_names_every_provider_step_when_blocked() -> None:
    payment = _state("Payment/Loan Processing", 1, "payment")
    approval = _state("Loan Approval - HDFC", 2, "loan")
    installation = _state("Installation Scheduling", 3, "installation")

    eligibility = dependency_resolver.evaluate([installation, approval, payment], installation.step_id)

    assert eligibility.eligible is False
    assert eligibility.rule == "installation_requires_payment_or_loan"
    assert eligibility.blocking_steps == ["Payment/Loan Processing", "Loan Approval - HDFC"]


def test_installation_without_any_provider_step_reports_placeholder() -> None:
    installation = _state("Installation Scheduling", 1, "installation")

    eligibility = dependency_resolver.evaluate([installation], installation.step_id)

    assert eligibility.blocking_steps == ["any payment step", "any loan step"]


def test_closure_lists_incomplete_steps_in_timeline_order() -> None:
    steps = [
        _state("Lead Created", 1, status="completed"),
        _state("Site Survey", 2),
        _state("Commissioning", 3, status="pending"),
        _state("Project Closure", 4, "closure"),
    ]

    eligibility = dependency_resolver.evaluate(steps, steps[3].step_id)

    assert eligibility.eligible is False
    assert eligibility.blocking_steps == ["Site Survey", "Commissioning"]


def test_closure_is_eligible_once_everything_else_is_completed() -> None:
    steps = [
        _state("Lead Created", 1, status="completed"),
        _state("Commissioning", 2, status="completed"),
        _state("Project Closure", 3, "closure"),
    ]
    assert dependency_resolver.evaluate(steps, steps[2].step_id).eligible is True


def test_custom_rule_table_binds_by_dependency_role() -> None:
    resolver = DependencyResolver(
        rules=[DependencyRule(name="net_meter_after_subsidy", dependent_role="net_meter", any_of=("subsidy",))]
    )
    subsidy = _state("Subsidy Application", 1, "subsidy")
    net_meter = _state("Net Meter Application", 2, "net_meter")

    blocked = resolver.evaluate([subsidy, net_meter], net_meter.step_id)
    assert blocked.blocking_steps == ["Subsidy Application"]

    done = replace(subsidy, status="completed")
    assert resolver.evaluate([done, net_meter], net_meter.step_id).eligible is True


def test_unknown_step_is_not_eligible() -> None:
    eligibility = dependency_resolver.evaluate([_state("Lead Created", 1)], uuid.uuid4())
    assert eligibility.eligible is False
    assert eligibility.rule == "unknown_step"
