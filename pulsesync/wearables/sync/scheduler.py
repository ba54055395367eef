"""Daily fan-out: one SYNC job per active connection.

The fan-out job runs on ``Settings.sync_cron`` (default 02:00 UTC).  It only
enqueues; it never waits for the syncs it creates.  Each SYNC job carries a
singleton key per (user, provider), so if yesterday's job for a connection
is still waiting in the queue, today's run does not stack a duplicate.
"""

from __future__ import annotations

import logging

from pulsesync.config import Settings
from pulsesync.services.connections import ConnectionStore
from pulsesync.services.queue import Job, JobQueue
from pulsesync.wearables.sync.jobs import JobType, SyncJobData

logger = logging.getLogger("pulsesync.wearables.sync.scheduler")

FANOUT_SCHEDULE_NAME = JobType.DAILY_FANOUT.value


def sync_singleton_key(user_id: str, provider: str) -> str:
    return f"sync:{user_id}:{provider}"


class DailyFanout:
    """Handler and schedule registration for the DAILY_FANOUT job."""

    def __init__(self, queue: JobQueue, connections: ConnectionStore, settings: Settings) -> None:
        self._queue = queue
        self._connections = connections
        self._settings = settings

    async def register(self) -> None:
        self._queue.register_worker(JobType.DAILY_FANOUT.value, self.handle, concurrency=1)
        await self._queue.schedule(FANOUT_SCHEDULE_NAME, self._settings.sync_cron, {})

    async def handle(self, job: Job) -> int:
        """Enqueue a default-window SYNC for every active connection.

        Returns:
            Number of SYNC jobs enqueued (0 with no active connections).
        """
        queued = 0
        seen = 0
        async for batch in self._connections.iter_active(self._settings.fanout_batch_size):
            for connection in batch:
                seen += 1
                payload = SyncJobData(
                    user_id=connection.user_id, provider=connection.provider
                ).to_payload()
                job_id = await self._queue.enqueue(
                    JobType.SYNC.value,
                    payload,
                    singleton_key=sync_singleton_key(connection.user_id, connection.provider),
                )
                if job_id is not None:
                    queued += 1

        if seen == 0:
            logger.info("Daily fan-out: no active connections")
            return 0

        logger.info(
            "Scheduled sync jobs for active connections: %d queued, %d already pending",
            queued, seen - queued,
        )
        return queued
