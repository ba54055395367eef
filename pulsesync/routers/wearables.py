"""Authenticated wearable endpoints: trigger backfill/sync jobs, list and
disconnect connections.

Job-triggering endpoints answer 202 as soon as the job is enqueued.  Job
outcomes are never reported synchronously; callers observe them through
the connection's ``last_synced_at`` on later reads.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, HTTPException

from pulsesync.dependencies import AppSettings, Connections, CurrentUser, Queue
from pulsesync.models.wearables import (
    BackfillRequest,
    ConnectionList,
    ConnectionRead,
    JobAccepted,
    SyncRequest,
)
from pulsesync.wearables.base import SUPPORTED_PROVIDERS, parse_provider
from pulsesync.wearables.sync.jobs import BackfillJobData, JobType, SyncJobData

router = APIRouter(prefix="/wearables", tags=["wearables"])
logger = logging.getLogger("pulsesync.wearables.api")


def _require_provider(provider: str) -> str:
    slug = parse_provider(provider.lower())
    if slug is None:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported provider '{provider}'. Supported: {', '.join(SUPPORTED_PROVIDERS)}",
        )
    return slug


@router.post(
    "/{provider}/backfill", response_model=JobAccepted, status_code=202, response_model_exclude_none=True
)
async def trigger_backfill(
    provider: str,
    user: CurrentUser,
    queue: Queue,
    settings: AppSettings,
    body: BackfillRequest | None = Body(default=None),
) -> Any:
    slug = _require_provider(provider)
    days_back = (body.days_back if body else None) or settings.backfill_days_default
    data = BackfillJobData(user_id=user.user_id, provider=slug, days_back=days_back)

    job_id = await queue.enqueue(JobType.BACKFILL.value, data.to_payload())
    logger.info(
        "Backfill queued: user=%s provider=%s days=%d job=%s",
        user.user_id, slug, data.days_back, job_id,
    )
    return JobAccepted(message="Backfill queued", provider=slug, job_id=job_id, days_back=data.days_back)


@router.post(
    "/{provider}/sync", response_model=JobAccepted, status_code=202, response_model_exclude_none=True
)
async def trigger_sync(
    provider: str,
    user: CurrentUser,
    queue: Queue,
    body: SyncRequest | None = Body(default=None),
) -> Any:
    slug = _require_provider(provider)
    request = body or SyncRequest()
    data = SyncJobData(
        user_id=user.user_id,
        provider=slug,
        start_date=request.start_date,
        end_date=request.end_date,
    )

    job_id = await queue.enqueue(JobType.SYNC.value, data.to_payload())
    logger.info("Sync queued: user=%s provider=%s job=%s", user.user_id, slug, job_id)
    return JobAccepted(
        message="Sync queued",
        provider=slug,
        job_id=job_id,
        start_date=request.start_date,
        end_date=request.end_date,
    )


@router.get("/connections", response_model=ConnectionList)
async def list_connections(user: CurrentUser, connections: Connections) -> Any:
    return ConnectionList(connections=await connections.list_for_user(user.user_id))


@router.post("/{provider}/disconnect", response_model=ConnectionRead)
async def disconnect(provider: str, user: CurrentUser, connections: Connections) -> Any:
    slug = _require_provider(provider)
    await connections.disconnect(user.user_id, slug)
    connection = await connections.get(user.user_id, slug)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"No {slug} connection")
    return connection
