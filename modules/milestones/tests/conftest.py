"""Shared test fixtures for the milestone sync test suite.

Provides a mock milestone API client, in-memory storage, a connectivity
monitor and milestone factories so the engine runs without a network.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from modules.milestones.connectivity import ConnectivityMonitor
from modules.milestones.manager import OptimisticUpdateManager, UpdateCallbacks
from modules.milestones.storage import MemoryStorage
from shared.config import Settings
from shared.schemas.milestones import Milestone, MilestoneUpdate, WorkflowType


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings with no retry delay and a retry loop that never fires during a test."""
    return Settings(
        milestone_storage_backend="memory",
        milestone_retry_delay_seconds=0,
        milestone_retry_loop_seconds=3600,
        local_user_id="user-local",
    )


# ---------------------------------------------------------------------------
# Collaborator mocks
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_api_client():
    """Mock milestone API client with the three methods the engine uses."""
    client = AsyncMock()
    client.get = AsyncMock()
    client.patch = AsyncMock()
    client.post = AsyncMock()
    return client


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def callbacks():
    return UpdateCallbacks(
        on_success=MagicMock(),
        on_error=MagicMock(),
        on_conflict=MagicMock(),
    )


@pytest.fixture
def make_manager(mock_api_client, storage, connectivity, callbacks, settings):
    """Factory for managers wired to the shared mocks; destroys them on teardown."""
    created: list[OptimisticUpdateManager] = []

    def _make(**overrides) -> OptimisticUpdateManager:
        client = overrides.pop("client", mock_api_client)
        kwargs = dict(
            storage=storage,
            connectivity=connectivity,
            callbacks=callbacks,
            settings=settings,
        )
        kwargs.update(overrides)
        manager = OptimisticUpdateManager(client, **kwargs)
        created.append(manager)
        return manager

    yield _make

    for manager in created:
        manager.destroy()


@pytest.fixture
def manager(make_manager):
    return make_manager()


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_milestone():
    """Factory for creating Milestone snapshots."""

    def _make(
        milestone_id: str | None = None,
        component_id: str = "component-1",
        milestone_name: str = "Receive",
        milestone_order: int = 0,
        is_completed: bool = False,
        percentage_complete: float | None = None,
        quantity_complete: float | None = None,
        quantity_total: float | None = None,
        weight: float | None = None,
        updated_at: datetime | None = None,
    ) -> Milestone:
        created = datetime.now(timezone.utc) - timedelta(days=1)
        return Milestone(
            id=milestone_id or str(uuid.uuid4()),
            component_id=component_id,
            milestone_name=milestone_name,
            milestone_order=milestone_order,
            is_completed=is_completed,
            percentage_complete=percentage_complete,
            quantity_complete=quantity_complete,
            quantity_total=quantity_total,
            weight=weight,
            created_at=created,
            updated_at=updated_at or created,
        )

    return _make


@pytest.fixture
def make_update():
    """Factory for MilestoneUpdate records targeting a milestone."""
    counter = iter(range(1, 1_000_000))

    def _make(
        milestone: Milestone,
        value: bool | int | float = True,
        workflow_type: WorkflowType | str = WorkflowType.DISCRETE,
        operation_id: str | None = None,
    ) -> MilestoneUpdate:
        timestamp = 1_700_000_000_000 + next(counter)
        return MilestoneUpdate(
            id=operation_id or f"{milestone.id}_{timestamp}",
            component_id=milestone.component_id,
            milestone_id=milestone.id,
            milestone_name=milestone.milestone_name,
            workflow_type=workflow_type,
            value=value,
            timestamp=timestamp,
        )

    return _make
