"""Job handlers for BACKFILL and SYNC.

The sync worker decides which date window to fetch.  The adapter fetches;
the storage sink writes and advances the watermark.  Adapter and storage
exceptions propagate to the job queue, which owns retries.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Callable

from pulsesync.config import Settings
from pulsesync.models.wearables import ConnectionRead
from pulsesync.services.connections import ConnectionStore
from pulsesync.services.queue import Job, JobQueue
from pulsesync.wearables.adapters import AdapterRegistry
from pulsesync.wearables.base import SyncSnapshot, utc_today
from pulsesync.wearables.sync.jobs import (
    BackfillJobData,
    JobType,
    SyncJobData,
    resolve_sync_window,
)
from pulsesync.wearables.sync.storage import StorageSink

logger = logging.getLogger("pulsesync.wearables.sync")


class SyncWorker:
    """Executes BACKFILL and SYNC jobs for one user + provider at a time."""

    def __init__(
        self,
        adapters: AdapterRegistry,
        sink: StorageSink,
        connections: ConnectionStore,
        settings: Settings,
        today: Callable[[], date] = utc_today,
    ) -> None:
        self._adapters = adapters
        self._sink = sink
        self._connections = connections
        self._settings = settings
        self._today = today

    def register(self, queue: JobQueue) -> None:
        queue.register_worker(JobType.BACKFILL.value, self.handle_backfill)
        queue.register_worker(JobType.SYNC.value, self.handle_sync)

    async def handle_backfill(self, job: Job) -> SyncSnapshot:
        data = BackfillJobData.from_payload(job.data, self._settings.backfill_days_default)
        adapter = self._adapters.get(data.provider)
        if await self._active_connection(job, data.user_id, data.provider) is None:
            return SyncSnapshot()

        snapshot = await adapter.backfill(data.user_id, data.days_back, today=self._today())
        await self._sink.save(data.user_id, data.provider, snapshot)

        logger.info(
            "Backfill job completed: user=%s provider=%s days=%d activities=%d sleep=%d dailies=%d",
            data.user_id, data.provider, data.days_back,
            len(snapshot.activities), len(snapshot.sleep), len(snapshot.dailies),
        )
        return snapshot

    async def handle_sync(self, job: Job) -> SyncSnapshot:
        data = SyncJobData.from_payload(job.data)
        adapter = self._adapters.get(data.provider)
        connection = await self._active_connection(job, data.user_id, data.provider)
        if connection is None:
            return SyncSnapshot()

        window = resolve_sync_window(
            data, connection.last_synced_at, self._settings.sync_trailing_days, today=self._today()
        )
        activities, sleep, dailies = await asyncio.gather(
            adapter.get_activities(data.user_id, window.start_date, window.end_date),
            adapter.get_sleep(data.user_id, window.start_date, window.end_date),
            adapter.get_dailies(data.user_id, window.start_date, window.end_date),
        )
        snapshot = SyncSnapshot(activities=activities, sleep=sleep, dailies=dailies)
        await self._sink.save(data.user_id, data.provider, snapshot)

        logger.info(
            "Sync job completed: user=%s provider=%s window=%s..%s "
            "activities=%d sleep=%d dailies=%d",
            data.user_id, data.provider, window.start_date, window.end_date,
            len(activities), len(sleep), len(dailies),
        )
        return snapshot

    async def _active_connection(
        self, job: Job, user_id: str, provider: str
    ) -> ConnectionRead | None:
        """The connection a job syncs, or None when it is gone or disconnected.

        Jobs queued before a disconnect complete here without fetching.
        """
        connection = await self._connections.get(user_id, provider)
        if connection is None or not connection.is_active:
            logger.warning(
                "Skipping job %s (%s): no active connection for user=%s provider=%s",
                job.id, job.name, user_id, provider,
            )
            return None
        return connection
