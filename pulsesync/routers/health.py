"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from pulsesync.dependencies import DB, AppSettings, Queue

router = APIRouter(tags=["system"])
logger = logging.getLogger("pulsesync.health")


@router.get("/health")
async def health_check(settings: AppSettings, db: DB, queue: Queue) -> dict:
    """Liveness probe with a database round-trip and per-job-type queue counts."""
    db_ok = False
    jobs: dict[str, dict[str, int]] = {}
    try:
        await db.fetchval("SELECT 1")
        db_ok = True
        jobs = await queue.stats()
    except Exception as exc:
        logger.warning("Health check DB probe failed: %s", exc)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "jobs": jobs,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
