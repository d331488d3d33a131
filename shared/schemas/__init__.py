"""Pydantic schemas for the milestone sync engine."""

from shared.schemas.milestones import (
    BulkUpdateResponse,
    BulkUpdateResult,
    ComponentProgress,
    ComponentStatus,
    Milestone,
    MilestoneChange,
    MilestoneConflict,
    MilestoneUpdate,
    OperationStatus,
    RealtimeMessage,
    RealtimeMessageType,
    SyncResponse,
    SyncResult,
    WorkflowType,
)

__all__ = [
    "BulkUpdateResponse",
    "BulkUpdateResult",
    "ComponentProgress",
    "ComponentStatus",
    "Milestone",
    "MilestoneChange",
    "MilestoneConflict",
    "MilestoneUpdate",
    "OperationStatus",
    "RealtimeMessage",
    "RealtimeMessageType",
    "SyncResponse",
    "SyncResult",
    "WorkflowType",
]
