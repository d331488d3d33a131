"""Optimistic update manager for milestone progress.

Applies milestone changes locally before the server confirms them, submits
them in the background, retries transient failures and rolls back when the
retries run out. While offline, updates are queued in durable storage and
replayed in FIFO order once connectivity returns.

All state lives on one manager instance and is mutated from a single event
loop. Network submissions run as background tasks; a submission whose
operation has been superseded by a newer update for the same milestone only
refreshes the server snapshot and never touches the newer optimistic state.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

import structlog
from pydantic import ValidationError

from modules.milestones.client import MilestoneApiClient, parse_data, send
from modules.milestones.connectivity import ConnectivityMonitor
from modules.milestones.errors import (
    ConflictNotFoundError,
    NetworkFailure,
    NotFoundError,
)
from modules.milestones.state import apply_update, build_update_payload, values_differ
from modules.milestones.storage import AsyncDurableStorage, MemoryStorage, Storage
from shared.config import Settings, get_settings
from shared.schemas.milestones import (
    Milestone,
    MilestoneConflict,
    MilestoneUpdate,
    OperationStatus,
    SyncResponse,
)

logger = structlog.get_logger()

SuccessCallback = Callable[[MilestoneUpdate, Milestone], None]
ErrorCallback = Callable[[MilestoneUpdate, Exception], None]
ConflictCallback = Callable[[MilestoneUpdate, MilestoneConflict], None]


class ConflictStrategy(str, Enum):
    ACCEPT_SERVER = "accept_server"
    ACCEPT_CLIENT = "accept_client"
    CUSTOM = "custom"


@dataclass
class UpdateCallbacks:
    """Optional hooks fired when an operation settles."""

    on_success: SuccessCallback | None = None
    on_error: ErrorCallback | None = None
    on_conflict: ConflictCallback | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


class OptimisticUpdateManager:
    """Owns server snapshots, optimistic overrides and the offline queue."""

    def __init__(
        self,
        client: MilestoneApiClient,
        *,
        storage: Storage | None = None,
        connectivity: ConnectivityMonitor | None = None,
        callbacks: UpdateCallbacks | None = None,
        settings: Settings | None = None,
        user_id: str | None = None,
    ):
        self.client = client
        self.settings = settings or get_settings()
        self.storage = storage if storage is not None else MemoryStorage()
        self.connectivity = connectivity or ConnectivityMonitor()
        self.callbacks = callbacks or UpdateCallbacks()
        self.user_id = user_id or self.settings.local_user_id or None
        self.storage_key = self.settings.milestone_storage_key

        self._server: dict[str, Milestone] = {}
        self._optimistic: dict[str, Milestone] = {}
        self._applied_at: dict[str, datetime] = {}
        self._pending: dict[str, MilestoneUpdate] = {}
        self._status: dict[str, OperationStatus] = {}
        self._confirmed_at: dict[str, float] = {}
        self._latest_operation: dict[str, str] = {}
        self._conflicts: dict[str, MilestoneConflict] = {}
        # Queued updates restored from storage whose optimistic value has not
        # been re-applied yet because no server snapshot was known at startup
        self._restored: dict[str, MilestoneUpdate] = {}

        self._offline_queue: list[MilestoneUpdate] = []
        self._rollback_queue: list[MilestoneUpdate] = []

        self._tasks: set[asyncio.Task] = set()
        self._retry_loop_task: asyncio.Task | None = None
        self._flush_lock = asyncio.Lock()
        # Latest state waiting for the background writer of a network backend
        self._unsaved_state: str | None = None
        self._writer_active = False
        self._destroyed = False

        self.connectivity.add_listener(self._handle_connectivity_change)
        if isinstance(self.storage, AsyncDurableStorage):
            logger.debug("milestone_state_load_deferred", storage=type(self.storage).__name__)
        else:
            self._load_persisted_state()

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("milestone_retry_loop_deferred", reason="no running event loop")
        else:
            self.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    def start(self) -> None:
        """Start the periodic offline-queue retry loop. Needs a running event loop."""
        if self._destroyed:
            return
        if self._retry_loop_task is not None and not self._retry_loop_task.done():
            return
        self._retry_loop_task = asyncio.get_running_loop().create_task(self._retry_loop())
        if self._unsaved_state is not None and not self._writer_active:
            self._writer_active = self._spawn(self._write_state)

    async def load_state(self) -> None:
        """Restore the persisted queues from a network storage backend.

        Local backends are read by the constructor, so this does nothing for
        them. Entries queued before the load finished stay behind the
        restored ones, and a milestone updated meanwhile keeps its newer
        operation.
        """
        if not isinstance(self.storage, AsyncDurableStorage):
            return
        try:
            raw = await self.storage.get_item(self.storage_key)
        except Exception as e:
            logger.warning("milestone_state_load_failed", key=self.storage_key, error=str(e))
            return
        self._restore_from(raw)

    def destroy(self) -> None:
        """Detach from the connectivity monitor and stop the retry loop.

        In-flight submissions are left to finish; await :meth:`wait_for_pending`
        first for a clean shutdown.
        """
        if self._destroyed:
            return
        self._destroyed = True
        self.connectivity.remove_listener(self._handle_connectivity_change)
        if self._retry_loop_task is not None:
            self._retry_loop_task.cancel()
            self._retry_loop_task = None
        logger.debug("milestone_manager_destroyed", in_flight=len(self._tasks))

    async def wait_for_pending(self) -> None:
        """Wait until every background submission has settled."""
        while True:
            running = [task for task in self._tasks if not task.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def apply_optimistic_update(self, update: MilestoneUpdate) -> Milestone:
        """Apply ``update`` locally and return the new snapshot immediately.

        Raises:
            NotFoundError: The milestone has never been loaded.
            UnsupportedWorkflowError: The workflow tag is unknown.
        """
        current = self.get_milestone_state(update.milestone_id)
        if current is None:
            raise NotFoundError(update.milestone_id)

        optimistic = apply_update(current, update, user_id=self.user_id)

        milestone_id = update.milestone_id
        self._optimistic[milestone_id] = optimistic
        self._applied_at[milestone_id] = optimistic.updated_at
        self._pending[milestone_id] = update
        self._status[milestone_id] = OperationStatus.PENDING
        self._latest_operation[milestone_id] = update.id
        self._conflicts.pop(milestone_id, None)
        self._restored.pop(milestone_id, None)

        if self.is_online and self._spawn(self._execute_update, update):
            logger.debug(
                "milestone_update_dispatched",
                milestone_id=milestone_id,
                operation_id=update.id,
            )
        else:
            self._enqueue_offline(update)

        return optimistic

    def update_server_state(self, milestones: Iterable[Milestone | dict[str, Any]]) -> None:
        """Merge authoritative snapshots, reporting conflicts with pending changes.

        A conflict leaves the optimistic override in place; resolving it is up
        to the caller (see :meth:`resolve_conflict`).
        """
        for raw in milestones:
            try:
                incoming = raw if isinstance(raw, Milestone) else Milestone.model_validate(raw)
            except ValidationError as e:
                logger.warning("milestone_server_state_invalid", error=str(e))
                continue

            milestone_id = incoming.id
            self._server[milestone_id] = incoming

            restored = self._restored.pop(milestone_id, None)
            if restored is not None and milestone_id not in self._optimistic:
                self._reapply_restored(restored, incoming)
                continue

            local = self._optimistic.get(milestone_id)
            update = self._pending.get(milestone_id)
            if local is None or update is None:
                continue

            applied_at = self._applied_at.get(milestone_id, local.updated_at)
            if values_differ(local, incoming) and incoming.updated_at > applied_at:
                conflict = MilestoneConflict(local=local, remote=incoming)
                self._conflicts[milestone_id] = conflict
                logger.info(
                    "milestone_conflict_detected",
                    milestone_id=milestone_id,
                    operation_id=update.id,
                    remote_updated_at=incoming.updated_at.isoformat(),
                )
                self._notify(self.callbacks.on_conflict, update, conflict)

    def resolve_conflict(
        self,
        milestone_id: str,
        strategy: ConflictStrategy | str,
        value: bool | int | float | None = None,
    ) -> Milestone:
        """Settle a recorded conflict.

        ``accept_server`` drops the local change, ``accept_client`` re-submits
        the local value on top of the remote snapshot and ``custom`` submits
        ``value`` instead.
        """
        strategy = ConflictStrategy(strategy)
        conflict = self._conflicts.get(milestone_id)
        if conflict is None:
            if self.get_milestone_state(milestone_id) is None:
                raise NotFoundError(milestone_id)
            raise ConflictNotFoundError(f"No conflict recorded for milestone {milestone_id}")

        if strategy is ConflictStrategy.ACCEPT_SERVER:
            self.discard_optimistic_state([milestone_id])
            logger.info("milestone_conflict_resolved", milestone_id=milestone_id, strategy=strategy.value)
            return self._server[milestone_id]

        if strategy is ConflictStrategy.CUSTOM and value is None:
            raise ValueError("A custom resolution needs a value")

        previous = self._pending[milestone_id]
        timestamp = _now_ms()
        resolution = previous.model_copy(
            update={
                "id": f"{milestone_id}_{timestamp}_resolved",
                "value": previous.value if strategy is ConflictStrategy.ACCEPT_CLIENT else value,
                "timestamp": timestamp,
                "retry_count": 0,
            }
        )
        # Rebase on the remote snapshot
        self._optimistic.pop(milestone_id, None)
        self._conflicts.pop(milestone_id, None)
        logger.info("milestone_conflict_resolved", milestone_id=milestone_id, strategy=strategy.value)
        return self.apply_optimistic_update(resolution)

    def discard_optimistic_state(self, milestone_ids: Iterable[str]) -> None:
        """Forget local changes for specific milestones.

        Any submission still in flight for them becomes stale.
        """
        for milestone_id in milestone_ids:
            self._clear_tracking(milestone_id)
            self._status.pop(milestone_id, None)
            self._confirmed_at.pop(milestone_id, None)

    def clear_optimistic_state(self) -> None:
        """Revert every milestone to its server snapshot. The offline queue is kept."""
        if not (
            self._optimistic or self._pending or self._status or self._conflicts or self._restored
        ):
            return
        discarded = len(self._optimistic)
        self._optimistic.clear()
        self._applied_at.clear()
        self._pending.clear()
        self._status.clear()
        self._confirmed_at.clear()
        self._latest_operation.clear()
        self._conflicts.clear()
        self._restored.clear()
        logger.info("milestone_optimistic_state_cleared", discarded=discarded)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_milestone_state(self, milestone_id: str) -> Milestone | None:
        if milestone_id in self._optimistic:
            return self._optimistic[milestone_id]
        return self._server.get(milestone_id)

    def get_all_milestone_states(self) -> dict[str, Milestone]:
        combined = dict(self._server)
        combined.update(self._optimistic)
        return combined

    def has_pending_updates(self, milestone_id: str) -> bool:
        return milestone_id in self._pending

    def get_operation_status(self, milestone_id: str) -> OperationStatus | None:
        return self._status.get(milestone_id)

    def has_recent_success(self, milestone_id: str) -> bool:
        """True while a confirmation is fresh enough to show success feedback."""
        if self._status.get(milestone_id) is not OperationStatus.SUCCESS:
            return False
        confirmed_at = self._confirmed_at.get(milestone_id)
        if confirmed_at is None:
            return False
        return time.monotonic() - confirmed_at <= self.settings.milestone_success_ttl_seconds

    def get_conflicts(self) -> dict[str, MilestoneConflict]:
        return dict(self._conflicts)

    def get_offline_queue(self) -> list[MilestoneUpdate]:
        return list(self._offline_queue)

    def get_rollback_queue(self) -> list[MilestoneUpdate]:
        return list(self._rollback_queue)

    def clear_offline_queue(self) -> None:
        self._offline_queue.clear()
        self._persist_state()

    # ------------------------------------------------------------------
    # Offline replay
    # ------------------------------------------------------------------

    async def flush_offline_queue(self) -> int:
        """Replay queued updates one by one in FIFO order.

        Stops at the first connectivity failure, leaving that entry and the
        rest queued. Permanently rejected entries are dropped and rolled back.
        Entries queued while the flush is running are picked up before it
        releases the lock, so a flush skipped for being concurrent loses nothing.

        Returns:
            Number of confirmed updates.
        """
        if self._flush_lock.locked():
            logger.debug("milestone_flush_already_running", queued=len(self._offline_queue))
            return 0

        confirmed = 0
        attempted: set[str] = set()
        async with self._flush_lock:
            while True:
                batch = [u for u in self._offline_queue if u.id not in attempted]
                if not batch:
                    break
                logger.info("milestone_flush_started", queued=len(batch))

                stopped = False
                for update in batch:
                    if not self.is_online:
                        logger.info("milestone_flush_interrupted", remaining=len(self._offline_queue))
                        stopped = True
                        break
                    if not any(entry.id == update.id for entry in self._offline_queue):
                        continue
                    attempted.add(update.id)

                    try:
                        milestone = await self._submit_with_retry(update)
                    except NetworkFailure as e:
                        if e.connectivity:
                            logger.warning(
                                "milestone_flush_requeued",
                                operation_id=update.id,
                                remaining=len(self._offline_queue),
                                error=str(e),
                            )
                            stopped = True
                            break
                        self._dequeue(update.id)
                        self._rollback(update, e)
                        continue

                    self._dequeue(update.id)
                    self._confirm(update, milestone)
                    confirmed += 1

                if stopped:
                    break

        return confirmed

    async def sync_offline_queue(self) -> SyncResponse | None:
        """Submit the whole offline queue as one ``/milestones/sync`` batch.

        Raises:
            NetworkFailure: The batch request itself failed; the queue is kept.
        """
        async with self._flush_lock:
            queued = list(self._offline_queue)
            if not queued:
                return None

            body = {"operations": [update.to_wire() for update in queued]}
            response = await send(self.client.post("/milestones/sync", body))
            sync = parse_data(response, SyncResponse)

            by_id = {update.id: update for update in queued}
            for result in sync.results:
                update = by_id.get(result.operation_id)
                if update is None:
                    logger.warning("milestone_sync_unknown_operation", operation_id=result.operation_id)
                    continue
                self._remove_from(self._offline_queue, update.id)
                if result.success:
                    milestone = result.result or self.get_milestone_state(update.milestone_id)
                    if milestone is not None:
                        self._confirm(update, milestone)
                else:
                    self._rollback(
                        update, NetworkFailure(result.error or "Rejected by sync", permanent=True)
                    )

            self._persist_state()
            logger.info(
                "milestone_sync_completed",
                processed=sync.operations_processed,
                successful=sync.successful,
                failed=sync.failed,
                remaining=len(self._offline_queue),
            )
            return sync

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spawn(self, func, *args) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        task = loop.create_task(func(*args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    def _handle_connectivity_change(self, online: bool) -> None:
        if not online:
            logger.info("milestone_manager_offline", queued=len(self._offline_queue))
            return
        logger.info("milestone_manager_online", queued=len(self._offline_queue))
        if self._offline_queue and not self._spawn(self.flush_offline_queue):
            logger.warning("milestone_flush_deferred", reason="no running event loop")

    async def _retry_loop(self) -> None:
        interval = self.settings.milestone_retry_loop_seconds
        while True:
            await asyncio.sleep(interval)
            if self.is_online and self._offline_queue:
                try:
                    await self.flush_offline_queue()
                except Exception as e:
                    logger.error("milestone_retry_loop_error", error=str(e), exc_info=True)

    async def _execute_update(self, update: MilestoneUpdate) -> None:
        try:
            milestone = await self._submit_with_retry(update)
        except NetworkFailure as e:
            self._rollback(update, e)
        else:
            self._confirm(update, milestone)

    async def _submit_with_retry(self, update: MilestoneUpdate) -> Milestone:
        attempts = max(1, self.settings.milestone_max_retries + 1)
        delay = self.settings.milestone_retry_delay_seconds
        tracked = False
        try:
            for attempt in range(1, attempts + 1):
                try:
                    return await self._submit(update)
                except NetworkFailure as e:
                    if not e.retryable or attempt == attempts:
                        logger.error(
                            "milestone_update_failed",
                            milestone_id=update.milestone_id,
                            operation_id=update.id,
                            attempts=attempt,
                            status=e.status_code,
                            error=str(e),
                        )
                        raise
                    logger.warning(
                        "milestone_update_retry",
                        milestone_id=update.milestone_id,
                        operation_id=update.id,
                        attempt=attempt,
                        error=str(e),
                    )
                    update.retry_count = attempt
                    if not tracked:
                        self._rollback_queue.append(update)
                        tracked = True
                        self._persist_state()
                    await asyncio.sleep(delay)
                    delay *= self.settings.milestone_retry_backoff_factor
            raise AssertionError("retry loop exited without a result")
        finally:
            if tracked:
                self._remove_from(self._rollback_queue, update.id)
                self._persist_state()

    async def _submit(self, update: MilestoneUpdate) -> Milestone:
        payload = build_update_payload(update)
        response = await send(self.client.patch(f"/milestones/{update.milestone_id}", payload))
        return parse_data(response, Milestone)

    def _is_current(self, update: MilestoneUpdate) -> bool:
        return self._latest_operation.get(update.milestone_id) == update.id

    def _confirm(self, update: MilestoneUpdate, milestone: Milestone) -> None:
        milestone_id = update.milestone_id
        self._server[milestone_id] = milestone
        if not self._is_current(update):
            logger.info(
                "milestone_stale_result_ignored",
                milestone_id=milestone_id,
                operation_id=update.id,
                outcome="success",
            )
            self._drop_orphaned_override(milestone_id)
            return

        self._clear_tracking(milestone_id)
        self._status[milestone_id] = OperationStatus.SUCCESS
        self._confirmed_at[milestone_id] = time.monotonic()
        logger.info("milestone_update_confirmed", milestone_id=milestone_id, operation_id=update.id)
        self._notify(self.callbacks.on_success, update, milestone)

    def _rollback(self, update: MilestoneUpdate, error: Exception) -> None:
        milestone_id = update.milestone_id
        if not self._is_current(update):
            logger.info(
                "milestone_stale_result_ignored",
                milestone_id=milestone_id,
                operation_id=update.id,
                outcome="error",
            )
            self._drop_orphaned_override(milestone_id)
            return

        self._clear_tracking(milestone_id)
        self._status[milestone_id] = OperationStatus.ERROR
        logger.error(
            "milestone_update_rolled_back",
            milestone_id=milestone_id,
            operation_id=update.id,
            error=str(error),
        )
        self._notify(self.callbacks.on_error, update, error)

    def _drop_orphaned_override(self, milestone_id: str) -> None:
        # An override with no operation in flight would hide every later snapshot
        if milestone_id not in self._latest_operation:
            self._optimistic.pop(milestone_id, None)
            self._applied_at.pop(milestone_id, None)

    def _clear_tracking(self, milestone_id: str) -> None:
        self._optimistic.pop(milestone_id, None)
        self._applied_at.pop(milestone_id, None)
        self._pending.pop(milestone_id, None)
        self._latest_operation.pop(milestone_id, None)
        self._conflicts.pop(milestone_id, None)
        self._restored.pop(milestone_id, None)

    def _reapply_restored(self, update: MilestoneUpdate, server: Milestone) -> None:
        try:
            optimistic = apply_update(server, update, user_id=self.user_id)
        except Exception as e:
            logger.warning("milestone_restore_reapply_failed", operation_id=update.id, error=str(e))
            return
        self._optimistic[update.milestone_id] = optimistic
        self._applied_at[update.milestone_id] = optimistic.updated_at

    def _notify(self, callback: Callable | None, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error("milestone_callback_error", error=str(e), exc_info=True)

    def _enqueue_offline(self, update: MilestoneUpdate) -> None:
        self._offline_queue.append(update)
        self._persist_state()
        logger.info(
            "milestone_update_queued_offline",
            milestone_id=update.milestone_id,
            operation_id=update.id,
            queued=len(self._offline_queue),
        )

    def _dequeue(self, operation_id: str) -> None:
        self._remove_from(self._offline_queue, operation_id)
        self._persist_state()

    @staticmethod
    def _remove_from(queue: list[MilestoneUpdate], operation_id: str) -> None:
        queue[:] = [entry for entry in queue if entry.id != operation_id]

    def _persist_state(self) -> None:
        state = {
            "offlineQueue": [update.to_wire() for update in self._offline_queue],
            "rollbackQueue": [update.to_wire() for update in self._rollback_queue],
        }
        payload = json.dumps(state)
        if isinstance(self.storage, AsyncDurableStorage):
            self._unsaved_state = payload
            if self._writer_active:
                return
            self._writer_active = self._spawn(self._write_state)
            if not self._writer_active:
                logger.debug("milestone_state_persist_deferred", reason="no running event loop")
            return
        try:
            self.storage.set_item(self.storage_key, payload)
        except Exception as e:
            logger.warning("milestone_state_persist_failed", key=self.storage_key, error=str(e))

    async def _write_state(self) -> None:
        # Only the newest snapshot matters; intermediate ones are skipped
        try:
            while self._unsaved_state is not None:
                payload, self._unsaved_state = self._unsaved_state, None
                try:
                    await self.storage.set_item(self.storage_key, payload)
                except Exception as e:
                    logger.warning("milestone_state_persist_failed", key=self.storage_key, error=str(e))
        finally:
            self._writer_active = False

    def _load_persisted_state(self) -> None:
        try:
            raw = self.storage.get_item(self.storage_key)
        except Exception as e:
            logger.warning("milestone_state_load_failed", key=self.storage_key, error=str(e))
            return
        self._restore_from(raw)

    def _restore_from(self, raw: str | None) -> None:
        if not raw:
            return
        try:
            parsed = json.loads(raw)
            offline = [MilestoneUpdate.model_validate(u) for u in parsed.get("offlineQueue") or []]
            rollback = [MilestoneUpdate.model_validate(u) for u in parsed.get("rollbackQueue") or []]
        except Exception as e:
            logger.warning("milestone_state_load_failed", key=self.storage_key, error=str(e))
            return

        seen: set[str] = set()
        restored: list[MilestoneUpdate] = []
        for update in offline + rollback:
            if update.id in seen:
                continue
            seen.add(update.id)
            restored.append(update)

        queued_meanwhile = [u for u in self._offline_queue if u.id not in seen]
        self._offline_queue = restored + queued_meanwhile
        live = set(self._latest_operation)
        for update in restored:
            if update.milestone_id in live:
                continue
            self._pending[update.milestone_id] = update
            self._status[update.milestone_id] = OperationStatus.PENDING
            self._latest_operation[update.milestone_id] = update.id
            self._restored[update.milestone_id] = update

        if rollback or queued_meanwhile:
            self._persist_state()
        logger.info("milestone_state_restored", queued=len(restored), from_rollback=len(rollback))
