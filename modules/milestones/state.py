"""Milestone state model: pure functions over milestone snapshots.

Nothing here validates ranges: a percentage of 120 or a negative quantity is
stored as given. Range checks belong to the caller that accepted the input.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from modules.milestones.errors import UnsupportedWorkflowError
from shared.schemas.milestones import (
    ComponentStatus,
    Milestone,
    MilestoneUpdate,
    WorkflowType,
    utcnow,
)


def resolve_workflow_type(workflow_type: WorkflowType | str) -> WorkflowType:
    """Map a raw workflow tag onto the closed set of modes."""
    try:
        return WorkflowType(workflow_type)
    except ValueError:
        raise UnsupportedWorkflowError(workflow_type) from None


def apply_value(
    milestone: Milestone,
    workflow_type: WorkflowType | str,
    value: bool | int | float,
    *,
    user_id: str | None = None,
    now: datetime | None = None,
) -> Milestone:
    """Return the snapshot that results from setting ``value`` on ``milestone``.

    Recomputes ``is_completed`` from the mode-specific field and stamps
    ``completed_at``/``completed_by`` on the transition to complete, clearing
    them on the transition back.
    """
    mode = resolve_workflow_type(workflow_type)
    now = now or utcnow()
    changes: dict = {}

    if mode is WorkflowType.DISCRETE:
        completed = bool(value)
    elif mode is WorkflowType.PERCENTAGE:
        changes["percentage_complete"] = value
        completed = value >= 100
    else:
        changes["quantity_complete"] = value
        completed = value >= (milestone.quantity_total or 0)

    changes["is_completed"] = completed
    if completed:
        if not (milestone.is_completed and milestone.completed_at):
            changes["completed_at"] = now
            changes["completed_by"] = user_id
    else:
        changes["completed_at"] = None
        changes["completed_by"] = None

    changes["updated_at"] = now
    return milestone.model_copy(update=changes)


def apply_update(
    milestone: Milestone,
    update: MilestoneUpdate,
    *,
    user_id: str | None = None,
    now: datetime | None = None,
) -> Milestone:
    return apply_value(milestone, update.workflow_type, update.value, user_id=user_id, now=now)


def build_update_payload(update: MilestoneUpdate) -> dict:
    """Request body for ``PATCH /milestones/{id}``."""
    mode = resolve_workflow_type(update.workflow_type)
    if mode is WorkflowType.DISCRETE:
        return {"isCompleted": bool(update.value)}
    if mode is WorkflowType.PERCENTAGE:
        return {"percentageValue": update.value}
    return {"quantityValue": update.value}


def values_differ(local: Milestone, remote: Milestone) -> bool:
    """True when two snapshots disagree on any progress field."""
    return (
        local.is_completed != remote.is_completed
        or local.percentage_complete != remote.percentage_complete
        or local.quantity_complete != remote.quantity_complete
    )


def _milestone_percent(milestone: Milestone, mode: WorkflowType) -> float:
    if mode is WorkflowType.DISCRETE:
        return 100.0 if milestone.is_completed else 0.0
    if mode is WorkflowType.PERCENTAGE:
        return float(milestone.percentage_complete or 0)
    total = milestone.quantity_total or 0
    if total <= 0:
        return 0.0
    return (milestone.quantity_complete or 0) / total * 100


def aggregate_component_progress(
    milestones: Iterable[Milestone], workflow_type: WorkflowType | str
) -> float:
    """Weighted average completion percentage across a component's milestones.

    Unrounded; display rounding is left to the presentation layer.
    """
    mode = resolve_workflow_type(workflow_type)
    total_weight = 0.0
    weighted = 0.0
    for milestone in milestones:
        weight = milestone.effective_weight
        total_weight += weight
        weighted += _milestone_percent(milestone, mode) * weight

    if total_weight <= 0:
        return 0.0
    return weighted / total_weight


def _has_progress(milestone: Milestone) -> bool:
    return (
        milestone.is_completed
        or bool(milestone.percentage_complete)
        or bool(milestone.quantity_complete)
    )


def derive_component_status(milestones: Iterable[Milestone]) -> ComponentStatus:
    milestones = list(milestones)
    if not milestones:
        return ComponentStatus.NOT_STARTED
    if all(m.is_completed for m in milestones):
        return ComponentStatus.COMPLETED
    if any(_has_progress(m) for m in milestones):
        return ComponentStatus.IN_PROGRESS
    return ComponentStatus.NOT_STARTED
