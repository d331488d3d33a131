"""Milestone schemas shared by the update engine, the API client and realtime messages.

Field names are snake_case in Python and camelCase on the wire, matching the
PipeTrak API payloads. Both spellings are accepted when parsing.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WorkflowType(str, Enum):
    """How a component tracks completion of its milestones."""

    DISCRETE = "MILESTONE_DISCRETE"
    PERCENTAGE = "MILESTONE_PERCENTAGE"
    QUANTITY = "MILESTONE_QUANTITY"


class OperationStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class ComponentStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Milestone(CamelModel):
    """A unit of installation progress tracked against a component."""

    id: str
    component_id: str
    milestone_name: str
    milestone_order: int = 0
    is_completed: bool = False
    percentage_complete: float | None = None
    quantity_complete: float | None = None
    quantity_total: float | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None
    # Credit weight for the component's weighted progress; absent means 1
    weight: float | None = None
    unit: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("completed_at", "created_at", "updated_at")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value)

    @property
    def effective_weight(self) -> float:
        return 1.0 if self.weight is None else self.weight


class MilestoneUpdate(CamelModel):
    """An intent to change one milestone's value.

    ``workflow_type`` is kept as the raw tag so that an unknown tag reaches the
    state model and is rejected there instead of failing at parse time.
    """

    id: str
    component_id: str
    milestone_id: str
    milestone_name: str
    workflow_type: str
    value: bool | int | float
    timestamp: int  # client clock, epoch milliseconds
    retry_count: int = 0
    transaction_id: str | None = None

    @field_validator("workflow_type", mode="before")
    @classmethod
    def plain_workflow_tag(cls, value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value


class MilestoneChange(CamelModel):
    """A caller-level request to set one milestone, before it gets an operation id."""

    milestone_id: str
    component_id: str
    milestone_name: str
    workflow_type: str
    value: bool | int | float

    @field_validator("workflow_type", mode="before")
    @classmethod
    def plain_workflow_tag(cls, value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value


class MilestoneConflict(BaseModel):
    """A pending optimistic value contradicted by a newer server snapshot."""

    local: Milestone
    remote: Milestone
    detected_at: datetime = Field(default_factory=utcnow)


class ComponentProgress(BaseModel):
    """Aggregate state pushed to the component-update collaborator."""

    component_id: str
    milestones: list[Milestone]
    completion_percent: float
    status: ComponentStatus


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class BulkUpdateResult(CamelModel):
    component_id: str
    milestone_name: str
    success: bool
    milestone: Milestone | None = None
    error: str | None = None


class BulkUpdateResponse(CamelModel):
    successful: int
    failed: int
    transaction_id: str
    results: list[BulkUpdateResult] = []


class SyncResult(CamelModel):
    operation_id: str
    success: bool
    result: Milestone | None = None
    error: str | None = None


class SyncResponse(CamelModel):
    sync_timestamp: datetime
    operations_processed: int
    successful: int
    failed: int
    results: list[SyncResult] = []


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


class RealtimeMessageType(str, Enum):
    MILESTONE_UPDATE = "milestone_update"
    BULK_MILESTONE_UPDATE = "bulk_milestone_update"
    CONFLICT_RESOLVED = "conflict_resolved"
    BULK_OPERATION_UNDONE = "bulk_operation_undone"
    USER_PRESENCE = "user_presence"


class RealtimeMessage(CamelModel):
    """An externally-sourced change delivered by the realtime transport."""

    type: str
    payload: dict[str, Any] = {}
    user_id: str | None = None
    timestamp: datetime | None = None
