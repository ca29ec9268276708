from __future__ import annotations

import uuid

from solarcrm.timeline.dependencies import StepState
from solarcrm.timeline.status import milestone_status, recompute_lead_status


def _state(name: str, status: str = "upcoming", *, advances: str | None = None, dependency_role: str = "none") -> StepState:
    return StepState(
        step_id=uuid.uuid4(),
        name=name,
        order_index=0,
        dependency_role=dependency_role,
        status=status,
        advances_status_to=advances,
    )


def test_milestones_follow_completed_steps() -> None:
    steps = [
        _state("Lead Created", "completed"),
        _state("Initial Contact", "completed", advances="lead_interested"),
        _state("Document Collection", "pending", advances="lead_processing"),
        _state("Project Closure", dependency_role="closure"),
    ]
    assert milestone_status(steps) == "lead_interested"


def test_all_non_closure_steps_completed_means_lead_completed() -> None:
    steps = [
        _state("Lead Created", "completed"),
        _state("Document Collection", "completed", advances="lead_processing"),
        _state("Project Closure", dependency_role="closure"),
    ]
    assert recompute_lead_status("lead_processing", steps) == "lead_completed"


def test_status_does_not_regress_without_permission() -> None:
    steps = [_state("Initial Contact", "pending", advances="lead_interested")]
    assert recompute_lead_status("lead_processing", steps) == "lead_processing"
    assert recompute_lead_status("lead_processing", steps, allow_regression=True) == "lead"


def test_cancelled_leads_keep_their_status() -> None:
    steps = [_state("Initial Contact", "completed", advances="lead_interested")]
    assert recompute_lead_status("lead_cancelled", steps) == "lead_cancelled"
    assert recompute_lead_status("lead_cancelled", steps, allow_regression=True) == "lead_cancelled"


def test_regression_stops_at_the_manually_set_status() -> None:
    steps = [
        _state("Lead Created"),
        _state("Document Collection", "completed", advances="lead_processing"),
    ]
    assert recompute_lead_status("lead_processing", steps[:1], allow_regression=True, floor="lead_interested") == "lead_interested"
    assert recompute_lead_status("lead_interested", steps, allow_regression=True, floor="lead_interested") == "lead_processing"
