from __future__ import annotations

from collections.abc import Sequence

from solarcrm.leads.models import LEAD_STATUS_CANCELLED, LEAD_STATUS_COMPLETED, LEAD_STATUS_LEAD, LEAD_STATUS_PROGRESSION
from solarcrm.timeline.dependencies import StepState


def _rank(status: str) -> int:
    try:
        return LEAD_STATUS_PROGRESSION.index(status)
    except ValueError:
        return 0


def milestone_status(steps: Sequence[StepState]) -> str:
    """Highest lead status justified by the completed steps alone."""
    reached = LEAD_STATUS_LEAD
    for step in steps:
        if step.is_completed and step.advances_status_to and _rank(step.advances_status_to) > _rank(reached):
            reached = step.advances_status_to

    gating = [step for step in steps if not step.is_closure]
    if gating and all(step.is_completed for step in gating):
        reached = LEAD_STATUS_COMPLETED
    return reached


def recompute_lead_status(
    current: str,
    steps: Sequence[StepState],
    *,
    allow_regression: bool = False,
    floor: str | None = None,
) -> str:
    """Aggregate lead status after a transition.

    Closure never changes the status; it is tracked by the lead's ``closed`` flag. The status
    only moves forward unless ``allow_regression`` is set (administrative ``move_backward``),
    and even then it never drops below ``floor``, the status last set by hand on the lead.
    """
    if current == LEAD_STATUS_CANCELLED:
        return current

    reached = milestone_status(steps)
    if allow_regression:
        if floor is not None and _rank(floor) > _rank(reached):
            return floor
        return reached
    if _rank(reached) > _rank(current):
        return reached
    return current
