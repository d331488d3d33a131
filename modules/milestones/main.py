"""Builds a ready-to-use milestone sync engine from settings."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from modules.milestones.client import HttpMilestoneClient, MilestoneApiClient
from modules.milestones.connectivity import ConnectivityMonitor
from modules.milestones.engine import ComponentUpdateCallback, MilestoneUpdateEngine
from modules.milestones.manager import OptimisticUpdateManager, UpdateCallbacks
from modules.milestones.realtime import Notifier, RealtimeListener
from modules.milestones.storage import MemoryStorage, RedisStorage, Storage, build_storage
from shared.config import Settings, get_settings
from shared.logging_setup import configure_logging
from shared.redis import close_redis

logger = structlog.get_logger()


@dataclass
class MilestoneSync:
    """The wired-up engine pieces for one client session."""

    manager: OptimisticUpdateManager
    engine: MilestoneUpdateEngine
    listener: RealtimeListener
    connectivity: ConnectivityMonitor

    async def start(self) -> None:
        """Load the persisted queues and start the retry loop.

        Needed for network storage backends, whose state cannot be read
        while the session is being built.
        """
        await self.manager.load_state()
        self.manager.start()

    async def close(self) -> None:
        await self.manager.wait_for_pending()
        self.manager.destroy()
        if isinstance(self.manager.storage, RedisStorage):
            await close_redis()


def create_milestone_sync(
    settings: Settings | None = None,
    *,
    client: MilestoneApiClient | None = None,
    storage: Storage | None = None,
    connectivity: ConnectivityMonitor | None = None,
    callbacks: UpdateCallbacks | None = None,
    on_component_update: ComponentUpdateCallback | None = None,
    notifier: Notifier | None = None,
) -> MilestoneSync:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    client = client or HttpMilestoneClient(
        settings.api_base_url,
        token=settings.api_token,
        timeout=settings.api_timeout_seconds,
    )

    if storage is None:
        # Graceful fallback to in-memory persistence if the backend is unusable
        try:
            storage = build_storage(settings)
        except Exception as e:
            logger.warning(
                "milestone_storage_unavailable",
                backend=settings.milestone_storage_backend,
                error=str(e),
            )
            storage = MemoryStorage()

    connectivity = connectivity or ConnectivityMonitor()
    manager = OptimisticUpdateManager(
        client,
        storage=storage,
        connectivity=connectivity,
        callbacks=callbacks,
        settings=settings,
    )
    engine = MilestoneUpdateEngine(manager, on_component_update=on_component_update)
    listener = RealtimeListener(
        manager,
        settings.local_user_id or None,
        client=client,
        notifier=notifier,
    )
    logger.info(
        "milestone_sync_ready",
        storage=type(storage).__name__,
        online=connectivity.is_online,
        queued=len(manager.get_offline_queue()),
    )
    return MilestoneSync(manager=manager, engine=engine, listener=listener, connectivity=connectivity)
