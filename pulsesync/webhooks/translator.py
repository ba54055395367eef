"""Turn verified provider webhooks into SYNC jobs.

A webhook only tells us *that* a user has new data, never the data itself
we rely on.  The translator collects the distinct provider user ids in the
payload, maps each to an active connection, and enqueues one SYNC job per
connection over the trailing sync window.  The sync worker then pulls the
data through the adapter.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from typing import Callable, Iterable

from pydantic import TypeAdapter, ValidationError

from pulsesync.config import Settings
from pulsesync.models.webhooks import FitbitNotification, GarminWebhookPayload
from pulsesync.services.connections import ConnectionStore
from pulsesync.services.queue import JobQueue
from pulsesync.wearables.base import utc_today
from pulsesync.wearables.sync.jobs import JobType, SyncJobData, trailing_window
from pulsesync.wearables.sync.scheduler import sync_singleton_key

logger = logging.getLogger("pulsesync.webhooks")

_fitbit_item = TypeAdapter(FitbitNotification)


def decode_garmin(raw_body: bytes) -> GarminWebhookPayload | None:
    """Parse a Garmin push body; None if it is not a JSON object of sections."""
    try:
        return GarminWebhookPayload.model_validate_json(raw_body)
    except ValidationError as exc:
        logger.warning("Unparseable Garmin webhook payload: %d error(s)", exc.error_count())
        return None


def decode_fitbit(raw_body: bytes) -> list[FitbitNotification]:
    """Parse a Fitbit notification array, dropping entries that fail validation."""
    try:
        items = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Unparseable Fitbit webhook payload: not JSON")
        return []
    if not isinstance(items, list):
        logger.warning("Unparseable Fitbit webhook payload: expected a list")
        return []

    notifications: list[FitbitNotification] = []
    for item in items:
        try:
            notifications.append(_fitbit_item.validate_python(item))
        except ValidationError:
            logger.warning("Skipping malformed Fitbit notification: %r", item)
    return notifications


class WebhookTranslator:
    """Maps provider user ids to connections and enqueues their SYNC jobs."""

    def __init__(
        self,
        queue: JobQueue,
        connections: ConnectionStore,
        settings: Settings,
        today: Callable[[], date] = utc_today,
    ) -> None:
        self._queue = queue
        self._connections = connections
        self._settings = settings
        self._today = today

    async def handle_garmin(self, raw_body: bytes) -> int:
        payload = decode_garmin(raw_body)
        if payload is None:
            return 0
        return await self.enqueue_syncs("garmin", payload.user_ids())

    async def handle_fitbit(self, raw_body: bytes) -> int:
        notifications = decode_fitbit(raw_body)
        for n in notifications:
            logger.debug(
                "Fitbit notification: owner=%s collection=%s date=%s",
                n.owner_id, n.collection_type, n.date,
            )
        return await self.enqueue_syncs("fitbit", {n.owner_id for n in notifications})

    async def enqueue_syncs(self, provider: str, provider_user_ids: Iterable[str]) -> int:
        """Enqueue one SYNC per distinct provider user with an active connection.

        Returns:
            Number of connections that now have a SYNC job pending.  A job
            already waiting for the same connection is reused, not duplicated.
        """
        window = trailing_window(self._settings.sync_trailing_days, self._today())
        queued = 0

        for provider_user_id in sorted(set(provider_user_ids)):
            connection = await self._connections.find_active_by_provider_user(
                provider, provider_user_id
            )
            if connection is None:
                logger.warning(
                    "%s webhook for unknown user: provider_user_id=%s",
                    provider, provider_user_id,
                )
                continue

            data = SyncJobData(
                user_id=connection.user_id,
                provider=provider,
                start_date=window.start_date,
                end_date=window.end_date,
            )
            job_id = await self._queue.enqueue(
                JobType.SYNC.value,
                data.to_payload(),
                singleton_key=sync_singleton_key(connection.user_id, provider),
            )
            queued += 1
            logger.info(
                "%s webhook: queued sync for user=%s window=%s..%s%s",
                provider, connection.user_id, window.start_date, window.end_date,
                "" if job_id else " (already pending)",
            )

        return queued
