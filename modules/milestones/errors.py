"""Errors raised by the milestone update engine."""

from __future__ import annotations


class MilestoneError(Exception):
    """Base class for milestone engine errors."""


class NotFoundError(MilestoneError):
    """The target milestone id is not known to the manager."""

    def __init__(self, milestone_id: str):
        super().__init__(f"Milestone {milestone_id} not found")
        self.milestone_id = milestone_id


class UnsupportedWorkflowError(MilestoneError):
    """The workflow tag is not one of the three known modes."""

    def __init__(self, workflow_type: object):
        super().__init__(f"Unknown workflow type: {workflow_type}")
        self.workflow_type = workflow_type


class ConflictNotFoundError(MilestoneError):
    """No conflict is recorded for the milestone."""


class NetworkFailure(MilestoneError):
    """A submission to the milestone API failed.

    ``connectivity`` marks transport-level failures (no HTTP response at all).
    Only those, server errors and throttling are worth retrying; any other
    HTTP status is a permanent rejection of the operation.
    """

    _RETRYABLE_STATUSES = frozenset({408, 425, 429})

    def __init__(
        self, message: str, status_code: int | None = None, *, permanent: bool = False
    ):
        super().__init__(message)
        self.status_code = status_code
        self.permanent = permanent

    @property
    def connectivity(self) -> bool:
        return self.status_code is None and not self.permanent

    @property
    def retryable(self) -> bool:
        if self.permanent:
            return False
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in self._RETRYABLE_STATUSES


class StorageFailure(MilestoneError):
    """Durable storage could not be read or written."""
