"""PulseSync job worker.

Run:
    python -m pulsesync.worker

Registers the BACKFILL, SYNC and DAILY_FANOUT handlers, persists the
fan-out cron schedule, and processes jobs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from pulsesync.config import Settings, configure_logging, get_settings
from pulsesync.services.connections import ConnectionStore
from pulsesync.services.database import Database
from pulsesync.services.queue import JobQueue
from pulsesync.wearables.adapters import build_adapter_registry
from pulsesync.wearables.sync.handlers import SyncWorker
from pulsesync.wearables.sync.scheduler import DailyFanout
from pulsesync.wearables.sync.storage import StorageSink

logger = logging.getLogger("pulsesync.worker")

SHUTDOWN_GRACE_SECONDS = 30.0


async def run(settings: Settings) -> None:
    db = Database(settings)
    await db.start()
    await db.apply_schema()

    connections = ConnectionStore(db)
    adapters = build_adapter_registry(settings, connections.get_access_token)
    queue = JobQueue(db, settings)

    SyncWorker(adapters, StorageSink(db, connections), connections, settings).register(queue)
    await DailyFanout(queue, connections, settings).register()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await queue.start()
    logger.info("Worker started (env=%s)", settings.environment)
    try:
        await stop.wait()
    finally:
        logger.info("Worker shutting down")
        await queue.stop(timeout=SHUTDOWN_GRACE_SECONDS)
        await adapters.aclose()
        await db.stop()


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
