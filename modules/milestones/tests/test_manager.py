"""Tests for OptimisticUpdateManager: optimistic apply, confirmation, retry,
rollback, conflicts and persisted state."""

from __future__ import annotations

import asyncio
import json
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from modules.milestones.errors import (
    ConflictNotFoundError,
    NetworkFailure,
    NotFoundError,
    StorageFailure,
    UnsupportedWorkflowError,
)
from modules.milestones.manager import ConflictStrategy, UpdateCallbacks
from modules.milestones.state import apply_value
from modules.milestones.storage import DurableStorage, MemoryStorage
from modules.milestones.tests.fixtures import make_server_echo
from shared.schemas.milestones import OperationStatus, WorkflowType, utcnow


def _gated_patch(gate: asyncio.Event, response: dict):
    async def _side_effect(path, body):
        await gate.wait()
        return response

    return _side_effect


# ===========================================================================
# Optimistic apply and confirmation
# ===========================================================================


class TestApplyAndConfirm:
    @pytest.mark.asyncio
    async def test_optimistic_value_visible_before_response(
        self, manager, mock_api_client, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        gate = asyncio.Event()
        confirmed = apply_value(m, WorkflowType.DISCRETE, True)
        mock_api_client.patch.side_effect = _gated_patch(gate, {"data": confirmed.to_wire()})

        result = manager.apply_optimistic_update(make_update(m, value=True))

        assert result.is_completed is True
        assert manager.get_milestone_state("m1").is_completed is True
        assert manager.has_pending_updates("m1") is True
        assert manager.get_operation_status("m1") is OperationStatus.PENDING

        gate.set()
        await manager.wait_for_pending()

    @pytest.mark.asyncio
    async def test_confirmation_clears_pending(
        self, manager, mock_api_client, callbacks, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        mock_api_client.patch.side_effect = make_server_echo(m)
        update = make_update(m, value=True)

        manager.apply_optimistic_update(update)
        await manager.wait_for_pending()

        assert manager.has_pending_updates("m1") is False
        assert manager.get_operation_status("m1") is OperationStatus.SUCCESS
        assert manager.get_milestone_state("m1").is_completed is True
        assert manager.has_recent_success("m1") is True
        mock_api_client.patch.assert_awaited_once_with("/milestones/m1", {"isCompleted": True})
        callbacks.on_success.assert_called_once()
        assert callbacks.on_success.call_args.args[0] is update

    @pytest.mark.asyncio
    async def test_recent_success_expires(self, manager, mock_api_client, make_milestone, make_update):
        m = make_milestone("m1")
        manager.update_server_state([m])
        mock_api_client.patch.side_effect = make_server_echo(m)

        manager.apply_optimistic_update(make_update(m))
        await manager.wait_for_pending()

        later = time.monotonic() + 60
        with patch("modules.milestones.manager.time.monotonic", return_value=later):
            assert manager.has_recent_success("m1") is False
        assert manager.get_operation_status("m1") is OperationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_percentage_update_sends_percentage_payload(
        self, manager, mock_api_client, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        mock_api_client.patch.side_effect = make_server_echo(m)

        manager.apply_optimistic_update(make_update(m, value=75, workflow_type=WorkflowType.PERCENTAGE))
        await manager.wait_for_pending()

        mock_api_client.patch.assert_awaited_once_with("/milestones/m1", {"percentageValue": 75})
        assert manager.get_milestone_state("m1").percentage_complete == 75


# ===========================================================================
# Errors raised synchronously
# ===========================================================================


class TestApplyErrors:
    def test_unknown_milestone_raises_and_leaves_state(self, manager, make_milestone, make_update):
        with pytest.raises(NotFoundError):
            manager.apply_optimistic_update(make_update(make_milestone("ghost")))

        assert manager.get_all_milestone_states() == {}
        assert manager.has_pending_updates("ghost") is False
        assert manager.get_operation_status("ghost") is None
        assert manager.get_offline_queue() == []

    def test_unknown_workflow_raises_and_leaves_state(self, manager, make_milestone, make_update):
        m = make_milestone("m1")
        manager.update_server_state([m])

        with pytest.raises(UnsupportedWorkflowError):
            manager.apply_optimistic_update(make_update(m, workflow_type="MILESTONE_HOURS"))

        assert manager.get_milestone_state("m1") == m
        assert manager.has_pending_updates("m1") is False
        assert manager.get_offline_queue() == []


# ===========================================================================
# Retry and rollback
# ===========================================================================


class TestRetryAndRollback:
    @pytest.mark.asyncio
    async def test_rollback_after_exhausting_retries(
        self, manager, mock_api_client, callbacks, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        mock_api_client.patch.side_effect = NetworkFailure("Service unavailable", status_code=503)
        update = make_update(m, value=True)

        manager.apply_optimistic_update(update)
        await manager.wait_for_pending()

        assert mock_api_client.patch.await_count == 3
        assert manager.get_milestone_state("m1") == m
        assert manager.has_pending_updates("m1") is False
        assert manager.get_operation_status("m1") is OperationStatus.ERROR
        assert manager.get_rollback_queue() == []
        assert update.retry_count == 2
        callbacks.on_error.assert_called_once()
        assert callbacks.on_error.call_args.args[0] is update
        callbacks.on_success.assert_not_called()

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(
        self, manager, mock_api_client, callbacks, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        echo = make_server_echo(m)
        attempts = []

        async def flaky(path, body):
            attempts.append(body)
            if len(attempts) == 1:
                raise NetworkFailure("connection reset")
            return await echo(path, body)

        mock_api_client.patch.side_effect = flaky

        manager.apply_optimistic_update(make_update(m))
        await manager.wait_for_pending()

        assert len(attempts) == 2
        assert manager.get_operation_status("m1") is OperationStatus.SUCCESS
        callbacks.on_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_client_error_fails_fast(
        self, manager, mock_api_client, callbacks, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        mock_api_client.patch.side_effect = NetworkFailure("Bad request", status_code=400)

        manager.apply_optimistic_update(make_update(m))
        await manager.wait_for_pending()

        assert mock_api_client.patch.await_count == 1
        assert manager.get_operation_status("m1") is OperationStatus.ERROR
        callbacks.on_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_malformed_response_rolls_back(
        self, manager, mock_api_client, callbacks, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        mock_api_client.patch.return_value = {"data": {"unexpected": True}}

        manager.apply_optimistic_update(make_update(m))
        await manager.wait_for_pending()

        assert mock_api_client.patch.await_count == 1
        assert manager.get_milestone_state("m1") == m
        callbacks.on_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_unexpected_client_exception_is_retried(
        self, manager, mock_api_client, callbacks, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        mock_api_client.patch.side_effect = RuntimeError("socket closed")

        manager.apply_optimistic_update(make_update(m))
        await manager.wait_for_pending()

        assert mock_api_client.patch.await_count == 3
        error = callbacks.on_error.call_args.args[1]
        assert isinstance(error, NetworkFailure)

    @pytest.mark.asyncio
    async def test_in_retry_update_is_persisted_in_rollback_queue(
        self, manager, mock_api_client, storage, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        gate = asyncio.Event()
        confirmed = apply_value(m, WorkflowType.DISCRETE, True)
        calls = []

        async def fail_then_wait(path, body):
            calls.append(body)
            if len(calls) == 1:
                raise NetworkFailure("timeout")
            await gate.wait()
            return {"data": confirmed.to_wire()}

        mock_api_client.patch.side_effect = fail_then_wait
        update = make_update(m)

        manager.apply_optimistic_update(update)
        while len(calls) < 2:
            await asyncio.sleep(0)

        assert [u.id for u in manager.get_rollback_queue()] == [update.id]
        persisted = json.loads(storage.get_item("milestone_offline_state"))
        assert [u["id"] for u in persisted["rollbackQueue"]] == [update.id]

        gate.set()
        await manager.wait_for_pending()

        assert manager.get_rollback_queue() == []
        assert json.loads(storage.get_item("milestone_offline_state"))["rollbackQueue"] == []

    @pytest.mark.asyncio
    async def test_callback_exception_does_not_break_manager(
        self, make_manager, mock_api_client, make_milestone, make_update
    ):
        manager = make_manager(
            callbacks=UpdateCallbacks(on_success=MagicMock(side_effect=ValueError("ui gone")))
        )
        m = make_milestone("m1")
        manager.update_server_state([m])
        mock_api_client.patch.side_effect = make_server_echo(m)

        manager.apply_optimistic_update(make_update(m))
        await manager.wait_for_pending()

        assert manager.get_operation_status("m1") is OperationStatus.SUCCESS


# ===========================================================================
# Superseded operations
# ===========================================================================


class TestSupersededOperations:
    @pytest.mark.asyncio
    async def test_stale_failure_does_not_roll_back_newer_update(
        self, manager, mock_api_client, callbacks, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        gate = asyncio.Event()
        final = apply_value(m, WorkflowType.PERCENTAGE, 80)
        calls = []

        async def patch_side_effect(path, body):
            calls.append(body)
            if len(calls) == 1:
                await gate.wait()
                raise NetworkFailure("Bad request", status_code=400)
            return {"data": final.to_wire()}

        mock_api_client.patch.side_effect = patch_side_effect

        first = make_update(m, value=40, workflow_type=WorkflowType.PERCENTAGE)
        second = make_update(m, value=80, workflow_type=WorkflowType.PERCENTAGE)
        manager.apply_optimistic_update(first)
        manager.apply_optimistic_update(second)

        gate.set()
        await manager.wait_for_pending()

        callbacks.on_error.assert_not_called()
        callbacks.on_success.assert_called_once()
        assert callbacks.on_success.call_args.args[0] is second
        assert manager.get_milestone_state("m1").percentage_complete == 80
        assert manager.get_operation_status("m1") is OperationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_stale_success_keeps_newer_optimistic_value(
        self, manager, mock_api_client, callbacks, make_milestone, make_update
    ):
        m = make_milestone("m1")
        manager.update_server_state([m])
        first_gate, second_gate = asyncio.Event(), asyncio.Event()
        first_result = apply_value(m, WorkflowType.PERCENTAGE, 40)
        second_result = apply_value(first_result, WorkflowType.PERCENTAGE, 90)
        calls = []

        async def patch_side_effect(path, body):
            calls.append(body)
            if len(calls) == 1:
                await first_gate.wait()
                return {"data": first_result.to_wire()}
            await second_gate.wait()
            return {"data": second_result.to_wire()}

        mock_api_client.patch.side_effect = patch_side_effect

        manager.apply_optimistic_update(make_update(m, value=40, workflow_type=WorkflowType.PERCENTAGE))
        second = make_update(m, value=90, workflow_type=WorkflowType.PERCENTAGE)
        manager.apply_optimistic_update(second)

        first_gate.set()
        for _ in range(10):
            await asyncio.sleep(0)

        assert manager.get_milestone_state("m1").percentage_complete == 90
        assert manager.has_pending_updates("m1") is True
        callbacks.on_success.assert_not_called()

        second_gate.set()
        await manager.wait_for_pending()

        callbacks.on_success.assert_called_once()
        assert callbacks.on_success.call_args.args[0] is second
        assert manager.has_pending_updates("m1") is False


# ===========================================================================
# Conflicts
# ===========================================================================


class TestConflicts:
    @pytest.fixture
    def pending(self, manager, mock_api_client, make_milestone, make_update):
        """A milestone with a discrete update still in flight."""
        m = make_milestone("m1")
        manager.update_server_state([m])
        gate = asyncio.Event()
        mock_api_client.patch.side_effect = _gated_patch(
            gate, {"data": apply_value(m, WorkflowType.DISCRETE, True).to_wire()}
        )
        update = make_update(m, value=True)
        return m, update, gate

    @pytest.mark.asyncio
    async def test_newer_differing_snapshot_raises_conflict(self, manager, callbacks, pending):
        m, update, gate = pending
        manager.apply_optimistic_update(update)

        remote = m.model_copy(update={"is_completed": False, "updated_at": utcnow() + timedelta(seconds=5)})
        manager.update_server_state([remote])

        callbacks.on_conflict.assert_called_once()
        conflict = callbacks.on_conflict.call_args.args[1]
        assert conflict.local.is_completed is True
        assert conflict.remote.is_completed is False
        assert "m1" in manager.get_conflicts()
        # The override stays until the conflict is resolved
        assert manager.get_milestone_state("m1").is_completed is True

        gate.set()
        await manager.wait_for_pending()

    @pytest.mark.asyncio
    async def test_older_snapshot_is_not_a_conflict(self, manager, callbacks, pending):
        m, update, gate = pending
        manager.apply_optimistic_update(update)

        manager.update_server_state([m])

        callbacks.on_conflict.assert_not_called()
        assert manager.get_conflicts() == {}

        gate.set()
        await manager.wait_for_pending()

    @pytest.mark.asyncio
    async def test_accept_server_discards_local_change(self, manager, pending):
        m, update, gate = pending
        manager.apply_optimistic_update(update)
        remote = m.model_copy(update={"updated_at": utcnow() + timedelta(seconds=5)})
        manager.update_server_state([remote])

        result = manager.resolve_conflict("m1", ConflictStrategy.ACCEPT_SERVER)

        assert result == remote
        assert manager.get_milestone_state("m1") == remote
        assert manager.has_pending_updates("m1") is False
        assert manager.get_conflicts() == {}

        gate.set()
        await manager.wait_for_pending()
        # The late confirmation of the discarded operation is stale
        assert manager.get_operation_status("m1") is None

    @pytest.mark.asyncio
    async def test_accept_client_resubmits_local_value(self, manager, mock_api_client, pending):
        m, update, gate = pending
        manager.apply_optimistic_update(update)
        remote = m.model_copy(update={"updated_at": utcnow() + timedelta(seconds=5)})
        manager.update_server_state([remote])

        result = manager.resolve_conflict("m1", "accept_client")

        assert result.is_completed is True
        assert manager.get_conflicts() == {}
        assert manager.has_pending_updates("m1") is True

        gate.set()
        await manager.wait_for_pending()
        assert mock_api_client.patch.await_count == 2
        assert manager.get_operation_status("m1") is OperationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_custom_resolution_requires_value(self, manager, pending):
        m, update, gate = pending
        manager.apply_optimistic_update(update)
        remote = m.model_copy(update={"updated_at": utcnow() + timedelta(seconds=5)})
        manager.update_server_state([remote])

        with pytest.raises(ValueError):
            manager.resolve_conflict("m1", ConflictStrategy.CUSTOM)

        result = manager.resolve_conflict("m1", ConflictStrategy.CUSTOM, value=False)
        assert result.is_completed is False

        gate.set()
        await manager.wait_for_pending()

    def test_resolve_without_conflict(self, manager, make_milestone):
        manager.update_server_state([make_milestone("m1")])

        with pytest.raises(ConflictNotFoundError):
            manager.resolve_conflict("m1", ConflictStrategy.ACCEPT_SERVER)
        with pytest.raises(NotFoundError):
            manager.resolve_conflict("ghost", ConflictStrategy.ACCEPT_SERVER)
        with pytest.raises(ValueError):
            manager.resolve_conflict("m1", "merge_somehow")


# ===========================================================================
# Server state and clearing
# ===========================================================================


class TestServerStateAndClear:
    def test_invalid_server_entries_are_skipped(self, manager, make_milestone):
        manager.update_server_state([{"id": "broken"}, make_milestone("m1")])

        assert set(manager.get_all_milestone_states()) == {"m1"}

    def test_clear_is_idempotent(self, manager, connectivity, make_milestone, make_update):
        connectivity.set_online(False)
        m = make_milestone("m1")
        manager.update_server_state([m])
        manager.apply_optimistic_update(make_update(m))

        manager.clear_optimistic_state()
        assert manager.get_milestone_state("m1") == m
        assert manager.has_pending_updates("m1") is False
        assert manager.get_operation_status("m1") is None

        manager.clear_optimistic_state()
        assert manager.get_milestone_state("m1") == m
        # Queued work survives a clear
        assert len(manager.get_offline_queue()) == 1

    def test_destroy_is_idempotent(self, manager, connectivity):
        manager.destroy()
        manager.destroy()
        assert manager._handle_connectivity_change not in connectivity._listeners


# ===========================================================================
# Persistence
# ===========================================================================


class TestPersistence:
    def test_persistence_failure_is_swallowed(
        self, make_manager, connectivity, make_milestone, make_update
    ):
        broken = MagicMock(spec=DurableStorage)
        broken.get_item.return_value = None
        broken.set_item.side_effect = StorageFailure("disk full")
        manager = make_manager(storage=broken)
        connectivity.set_online(False)
        m = make_milestone("m1")
        manager.update_server_state([m])

        result = manager.apply_optimistic_update(make_update(m))

        assert result.is_completed is True
        assert len(manager.get_offline_queue()) == 1
        broken.set_item.assert_called()

    def test_malformed_stored_state_means_empty_queue(self, make_manager):
        manager = make_manager(storage=MemoryStorage({"milestone_offline_state": "{not json"}))
        assert manager.get_offline_queue() == []

    def test_unreadable_storage_means_empty_queue(self, make_manager):
        broken = MagicMock(spec=DurableStorage)
        broken.get_item.side_effect = StorageFailure("permission denied")

        manager = make_manager(storage=broken)

        assert manager.get_offline_queue() == []

    def test_restores_queues_and_reapplies_on_snapshot(
        self, make_manager, connectivity, make_milestone, make_update
    ):
        m1, m2 = make_milestone("m1"), make_milestone("m2")
        queued = make_update(m1, value=True)
        in_retry = make_update(m2, value=True)
        stored = {
            "offlineQueue": [queued.to_wire()],
            "rollbackQueue": [in_retry.to_wire(), queued.to_wire()],
        }
        storage = MemoryStorage({"milestone_offline_state": json.dumps(stored)})
        connectivity.set_online(False)

        manager = make_manager(storage=storage)

        assert [u.id for u in manager.get_offline_queue()] == [queued.id, in_retry.id]
        assert manager.get_rollback_queue() == []
        assert manager.has_pending_updates("m1") is True
        assert manager.get_operation_status("m2") is OperationStatus.PENDING
        assert json.loads(storage.get_item("milestone_offline_state"))["rollbackQueue"] == []

        manager.update_server_state([m1, m2])

        assert manager.get_milestone_state("m1").is_completed is True
        assert manager.get_milestone_state("m2").is_completed is True

    @pytest.mark.asyncio
    async def test_clear_forgets_restored_entries(
        self, make_manager, mock_api_client, connectivity, make_milestone, make_update
    ):
        m = make_milestone("m1")
        queued = make_update(m, value=True)
        storage = MemoryStorage(
            {"milestone_offline_state": json.dumps({"offlineQueue": [queued.to_wire()], "rollbackQueue": []})}
        )
        connectivity.set_online(False)
        manager = make_manager(storage=storage)

        manager.clear_optimistic_state()
        manager.update_server_state([m])

        assert manager.has_pending_updates("m1") is False
        assert manager.get_milestone_state("m1") == m
        assert [u.id for u in manager.get_offline_queue()] == [queued.id]

        # The queued entry is still sent; its result no longer owns the milestone
        mock_api_client.patch.side_effect = make_server_echo(m)
        connectivity.set_online(True)
        await manager.wait_for_pending()

        mock_api_client.patch.assert_awaited_once()
        assert manager.get_offline_queue() == []
        assert manager.get_operation_status("m1") is None

        newer = m.model_copy(update={"is_completed": False, "updated_at": utcnow() + timedelta(seconds=5)})
        manager.update_server_state([newer])

        assert manager.get_milestone_state("m1").is_completed is False
        assert manager.get_all_milestone_states()["m1"] == newer
