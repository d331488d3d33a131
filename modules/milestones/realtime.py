"""Bridge from the realtime transport into the update manager.

The transport (channel subscription, websocket, pub/sub) lives elsewhere and
hands decoded messages to :meth:`RealtimeListener.handle_message`.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

import structlog
from pydantic import ValidationError

from modules.milestones.client import MilestoneApiClient, parse_data, send
from modules.milestones.errors import NetworkFailure
from modules.milestones.manager import OptimisticUpdateManager
from shared.schemas.milestones import Milestone, RealtimeMessage, RealtimeMessageType

logger = structlog.get_logger()

Notifier = Callable[[str], None]


class RealtimeListener:
    """Feeds changes made by other users and sessions into the manager."""

    def __init__(
        self,
        manager: OptimisticUpdateManager,
        local_user_id: str | None,
        *,
        client: MilestoneApiClient | None = None,
        notifier: Notifier | None = None,
        on_milestone_update: Callable[[Milestone], None] | None = None,
        on_bulk_update: Callable[[dict[str, Any]], None] | None = None,
        on_conflict_resolved: Callable[[dict[str, Any]], None] | None = None,
        on_presence_update: Callable[[dict[str, Any]], None] | None = None,
    ):
        self.manager = manager
        self.local_user_id = local_user_id
        self.client = client or manager.client
        self.notifier = notifier
        self.on_milestone_update = on_milestone_update
        self.on_bulk_update = on_bulk_update
        self.on_conflict_resolved = on_conflict_resolved
        self.on_presence_update = on_presence_update

    async def handle_message(self, message: RealtimeMessage | Mapping[str, Any]) -> None:
        """Dispatch one inbound message. Malformed or unknown messages are dropped."""
        try:
            if not isinstance(message, RealtimeMessage):
                message = RealtimeMessage.model_validate(message)
            kind = RealtimeMessageType(message.type)
        except (ValidationError, ValueError) as e:
            logger.warning("realtime_message_ignored", error=str(e))
            return

        remote = message.user_id != self.local_user_id
        logger.debug("realtime_message_received", type=kind.value, remote=remote)

        if kind is RealtimeMessageType.MILESTONE_UPDATE:
            self._handle_milestone_update(message.payload, remote)
        elif kind is RealtimeMessageType.BULK_MILESTONE_UPDATE:
            self._handle_bulk_update(message.payload, remote)
        elif kind is RealtimeMessageType.CONFLICT_RESOLVED:
            await self._handle_conflict_resolved(message.payload, remote)
        elif kind is RealtimeMessageType.BULK_OPERATION_UNDONE:
            await self._handle_bulk_undone(message.payload, remote)
        elif kind is RealtimeMessageType.USER_PRESENCE:
            if remote:
                self._call(self.on_presence_update, message.payload)

    def _handle_milestone_update(self, payload: dict[str, Any], remote: bool) -> None:
        milestone = _parse_milestone(payload.get("milestone"))
        if milestone is None:
            logger.warning("realtime_milestone_update_without_milestone")
            return

        self.manager.update_server_state([milestone])
        if remote:
            self._notify(f'Milestone "{milestone.milestone_name}" updated by another user')
            self._call(self.on_milestone_update, milestone)

    def _handle_bulk_update(self, payload: dict[str, Any], remote: bool) -> None:
        milestones = _parse_milestones(payload.get("milestones"))
        if milestones:
            self.manager.update_server_state(milestones)
        if remote:
            updated = payload.get("updated", len(milestones))
            self._notify(f"{updated} milestones updated by another user")
            self._call(self.on_bulk_update, payload)

    async def _handle_conflict_resolved(self, payload: dict[str, Any], remote: bool) -> None:
        milestone_id = payload.get("milestoneId") or payload.get("milestone_id")
        if not milestone_id:
            logger.warning("realtime_conflict_resolved_without_milestone")
            return

        await self._refresh([milestone_id], _parse_milestones([payload.get("milestone")]))
        if remote:
            resolution = payload.get("resolution", "server")
            self._notify(f"Conflict resolved for milestone using {resolution} strategy")
        self._call(self.on_conflict_resolved, payload)

    async def _handle_bulk_undone(self, payload: dict[str, Any], remote: bool) -> None:
        milestones = _parse_milestones(payload.get("milestones"))
        milestone_ids = list(payload.get("milestoneIds") or payload.get("milestone_ids") or [])
        milestone_ids += [m.id for m in milestones if m.id not in milestone_ids]

        await self._refresh(milestone_ids, milestones)
        if remote:
            undone = payload.get("undone", len(milestone_ids))
            self._notify(f"Bulk operation with {undone} changes was undone by another user")

    async def _refresh(self, milestone_ids: list[str], carried: list[Milestone]) -> None:
        """Drop stale local changes, then reload the authoritative snapshots."""
        self.manager.discard_optimistic_state(milestone_ids)

        fresh = {m.id: m for m in carried}
        for milestone_id in milestone_ids:
            if milestone_id in fresh:
                continue
            try:
                response = await send(self.client.get(f"/milestones/{milestone_id}"))
                fresh[milestone_id] = parse_data(response, Milestone)
            except NetworkFailure as e:
                logger.warning("realtime_refresh_failed", milestone_id=milestone_id, error=str(e))

        if fresh:
            self.manager.update_server_state(list(fresh.values()))
        logger.info("realtime_milestones_refreshed", requested=len(milestone_ids), refreshed=len(fresh))

    def _notify(self, text: str) -> None:
        self._call(self.notifier, text)

    def _call(self, callback: Callable | None, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error("realtime_callback_error", error=str(e), exc_info=True)


def _parse_milestone(raw: Any) -> Milestone | None:
    if raw is None:
        return None
    try:
        return raw if isinstance(raw, Milestone) else Milestone.model_validate(raw)
    except ValidationError as e:
        logger.warning("realtime_milestone_invalid", error=str(e))
        return None


def _parse_milestones(raw: Any) -> list[Milestone]:
    parsed = (_parse_milestone(item) for item in raw or [])
    return [m for m in parsed if m is not None]
