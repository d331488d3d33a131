"""Update submission façade used by presentation code.

Turns UI intents into milestone update records, hands them to the
:class:`OptimisticUpdateManager` and keeps the owning component's aggregate
progress in sync without waiting for the server.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

import structlog

from modules.milestones.client import parse_data, send
from modules.milestones.errors import MilestoneError
from modules.milestones.manager import OptimisticUpdateManager
from modules.milestones.state import aggregate_component_progress, derive_component_status
from shared.schemas.milestones import (
    BulkUpdateResponse,
    ComponentProgress,
    Milestone,
    MilestoneChange,
    MilestoneUpdate,
    OperationStatus,
    SyncResponse,
    WorkflowType,
)

logger = structlog.get_logger()

ComponentUpdateCallback = Callable[[str, ComponentProgress], None]


@dataclass
class BulkApplyOutcome:
    """Per-item result of a bulk optimistic update. Items succeed or fail independently."""

    applied: list[Milestone] = field(default_factory=list)
    failed: list[tuple[MilestoneUpdate, Exception]] = field(default_factory=list)


class MilestoneUpdateEngine:
    """Entry point for single and bulk milestone updates."""

    def __init__(
        self,
        manager: OptimisticUpdateManager,
        on_component_update: ComponentUpdateCallback | None = None,
    ):
        self.manager = manager
        self.on_component_update = on_component_update

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_milestone(
        self,
        milestone_id: str,
        component_id: str,
        milestone_name: str,
        workflow_type: WorkflowType | str,
        value: bool | int | float,
    ) -> Milestone:
        """Optimistically set one milestone and refresh its component's aggregate."""
        timestamp = int(time.time() * 1000)
        update = MilestoneUpdate(
            id=f"{milestone_id}_{timestamp}",
            component_id=component_id,
            milestone_id=milestone_id,
            milestone_name=milestone_name,
            workflow_type=workflow_type,
            value=value,
            timestamp=timestamp,
        )
        milestone = self.manager.apply_optimistic_update(update)
        self._publish_component_progress(component_id, update.workflow_type)
        return milestone

    def bulk_update_milestones(
        self, changes: Iterable[MilestoneChange | Mapping]
    ) -> BulkApplyOutcome:
        """Apply a batch of changes as independent optimistic updates.

        There is no atomicity across the batch: an unknown milestone or workflow
        on one item is recorded in ``failed`` and the rest still apply.
        """
        items = [
            change if isinstance(change, MilestoneChange) else MilestoneChange.model_validate(change)
            for change in changes
        ]
        timestamp = int(time.time() * 1000)
        outcome = BulkApplyOutcome()
        touched: dict[str, str] = {}

        for index, change in enumerate(items):
            update = MilestoneUpdate(
                id=f"bulk_{timestamp}_{index}",
                timestamp=timestamp,
                **change.model_dump(),
            )
            try:
                outcome.applied.append(self.manager.apply_optimistic_update(update))
            except MilestoneError as e:
                logger.warning(
                    "bulk_milestone_item_failed",
                    milestone_id=change.milestone_id,
                    operation_id=update.id,
                    error=str(e),
                )
                outcome.failed.append((update, e))
                continue
            touched[change.component_id] = change.workflow_type

        for component_id, workflow_type in touched.items():
            self._publish_component_progress(component_id, workflow_type)

        logger.info(
            "bulk_milestone_update_applied",
            applied=len(outcome.applied),
            failed=len(outcome.failed),
        )
        return outcome

    async def submit_bulk_update(
        self, changes: Iterable[MilestoneChange | Mapping]
    ) -> BulkUpdateResponse:
        """Send a batch to ``/milestones/bulk-update`` and merge the confirmed rows.

        Raises:
            NetworkFailure: The request failed or the response was malformed.
        """
        items = [
            change if isinstance(change, MilestoneChange) else MilestoneChange.model_validate(change)
            for change in changes
        ]
        body = {
            "updates": [
                {
                    "componentId": change.component_id,
                    "milestoneName": change.milestone_name,
                    "workflowType": change.workflow_type,
                    "value": change.value,
                }
                for change in items
            ]
        }
        response = await send(self.manager.client.post("/milestones/bulk-update", body))
        result = parse_data(response, BulkUpdateResponse)

        confirmed = [row.milestone for row in result.results if row.success and row.milestone]
        if confirmed:
            self.manager.update_server_state(confirmed)

        workflow_by_component = {change.component_id: change.workflow_type for change in items}
        for component_id in {row.component_id for row in result.results if row.success}:
            workflow_type = workflow_by_component.get(component_id)
            if workflow_type is not None:
                self._publish_component_progress(component_id, workflow_type)

        logger.info(
            "bulk_milestone_update_submitted",
            transaction_id=result.transaction_id,
            successful=result.successful,
            failed=result.failed,
        )
        return result

    async def sync_offline_queue(self) -> SyncResponse | None:
        return await self.manager.sync_offline_queue()

    def clear_optimistic_state(self) -> None:
        self.manager.clear_optimistic_state()

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self.manager.is_online

    @property
    def offline_queue_count(self) -> int:
        return len(self.manager.get_offline_queue())

    def get_milestone_state(self, milestone_id: str) -> Milestone | None:
        return self.manager.get_milestone_state(milestone_id)

    def get_all_milestone_states(self) -> dict[str, Milestone]:
        return self.manager.get_all_milestone_states()

    def has_pending_updates(self, milestone_id: str) -> bool:
        return self.manager.has_pending_updates(milestone_id)

    def get_operation_status(self, milestone_id: str) -> OperationStatus | None:
        return self.manager.get_operation_status(milestone_id)

    def has_recent_success(self, milestone_id: str) -> bool:
        return self.manager.has_recent_success(milestone_id)

    def get_component_milestones(self, component_id: str) -> list[Milestone]:
        """Current (optimistic-aware) milestones of a component in display order."""
        milestones = [
            m for m in self.manager.get_all_milestone_states().values()
            if m.component_id == component_id
        ]
        return sorted(milestones, key=lambda m: (m.milestone_order, m.milestone_name))

    def component_has_pending_updates(self, component_id: str) -> bool:
        return any(
            self.manager.has_pending_updates(m.id)
            for m in self.get_component_milestones(component_id)
        )

    def get_component_progress(
        self, component_id: str, workflow_type: WorkflowType | str
    ) -> ComponentProgress:
        milestones = self.get_component_milestones(component_id)
        return ComponentProgress(
            component_id=component_id,
            milestones=milestones,
            completion_percent=aggregate_component_progress(milestones, workflow_type),
            status=derive_component_status(milestones),
        )

    def _publish_component_progress(self, component_id: str, workflow_type: str) -> None:
        if self.on_component_update is None:
            return
        progress = self.get_component_progress(component_id, workflow_type)
        try:
            self.on_component_update(component_id, progress)
        except Exception as e:
            logger.error(
                "component_update_callback_error",
                component_id=component_id,
                error=str(e),
                exc_info=True,
            )
