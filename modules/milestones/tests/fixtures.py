"""Test helpers and canned API behaviour for milestone sync tests."""

from __future__ import annotations

from modules.milestones.state import apply_value
from shared.schemas.milestones import Milestone, WorkflowType


def make_server_echo(*milestones: Milestone):
    """Create a ``patch`` side_effect that behaves like the milestone API.

    The server applies the PATCH body to its own copy of the milestone and
    returns the result, so confirmations carry realistic snapshots.

    Usage::

        mock_api_client.patch.side_effect = make_server_echo(milestone)
    """
    store = {m.id: m for m in milestones}

    async def _side_effect(path: str, body: dict) -> dict:
        milestone_id = path.rsplit("/", 1)[-1]
        current = store[milestone_id]
        if "isCompleted" in body:
            updated = apply_value(current, WorkflowType.DISCRETE, body["isCompleted"])
        elif "percentageValue" in body:
            updated = apply_value(current, WorkflowType.PERCENTAGE, body["percentageValue"])
        else:
            updated = apply_value(current, WorkflowType.QUANTITY, body["quantityValue"])
        store[milestone_id] = updated
        return {"data": updated.to_wire()}

    return _side_effect
