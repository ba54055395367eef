"""Idempotent storage sink for normalized wearable records.

``StorageSink.save`` is the only writer of wearable_activities,
wearable_sleep, wearable_daily and wearable_raw_ingest.  Each record is
upserted on its natural key together with its raw-ingest audit row, in one
short transaction per record, so applying the same snapshot any number of
times converges on the same stored state.

The connection watermark (``last_synced_at``) is advanced only after all
three record types have been written.  If any write raises, the exception
propagates to the job queue and the watermark stays where it was, so the
retry re-fetches the whole window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, TypeVar

from pulsesync.services.connections import ConnectionStore
from pulsesync.services.database import Database
from pulsesync.wearables.base import (
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
    SyncSnapshot,
)
from pulsesync.wearables.sync.dedup import (
    build_upsert_query,
    daily_key,
    payload_content_hash,
    record_key,
)

logger = logging.getLogger("pulsesync.wearables.sync.storage")

_ACTIVITY_COLUMNS = [
    "user_id", "provider", "external_id", "activity_type", "start_time", "end_time",
    "duration_seconds", "calories", "distance_meters", "steps", "avg_heart_rate",
    "max_heart_rate", "raw",
]
_SLEEP_COLUMNS = [
    "user_id", "provider", "external_id", "sleep_date", "start_time", "end_time",
    "duration_seconds", "deep_sleep_seconds", "light_sleep_seconds", "rem_sleep_seconds",
    "awake_seconds", "sleep_score", "stages", "raw",
]
_DAILY_COLUMNS = [
    "user_id", "provider", "date", "external_id", "steps", "calories", "distance_meters",
    "active_minutes", "resting_heart_rate", "avg_heart_rate", "max_heart_rate",
    "stress_level", "floors_climbed", "raw",
]
_RAW_INGEST_COLUMNS = [
    "user_id", "provider", "data_type", "source_id", "observed_date", "payload",
    "content_hash",
]

UPSERT_ACTIVITY = build_upsert_query(
    "wearable_activities", _ACTIVITY_COLUMNS, ["user_id", "provider", "external_id"],
    now_columns=["updated_at", "synced_at"],
)
UPSERT_SLEEP = build_upsert_query(
    "wearable_sleep", _SLEEP_COLUMNS, ["user_id", "provider", "external_id"],
    now_columns=["updated_at", "synced_at"],
)
UPSERT_DAILY = build_upsert_query(
    "wearable_daily", _DAILY_COLUMNS, ["user_id", "provider", "date"],
    now_columns=["updated_at", "synced_at"],
)
UPSERT_RAW_INGEST = build_upsert_query(
    "wearable_raw_ingest", _RAW_INGEST_COLUMNS,
    ["user_id", "provider", "data_type", "source_id"],
    now_columns=["updated_at", "fetched_at"],
)

T = TypeVar("T")


@dataclass
class SaveResult:
    """Counts of records written by one save."""

    activities: int = 0
    sleep: int = 0
    dailies: int = 0


def _last_wins(records: Iterable[T], key) -> list[T]:
    """Collapse records sharing an idempotency key, keeping the last one."""
    unique: dict[str, T] = {}
    for record in records:
        unique[key(record)] = record
    return list(unique.values())


class StorageSink:
    """Writes SyncSnapshots and advances the connection watermark."""

    def __init__(self, db: Database, connections: ConnectionStore) -> None:
        self._db = db
        self._connections = connections

    async def save(self, user_id: str, provider: str, snapshot: SyncSnapshot) -> SaveResult:
        """Upsert every record in the snapshot, then advance the watermark.

        Raises:
            Any database error, unchanged.  The watermark is not advanced.
        """
        result = SaveResult(
            activities=await self.save_activities(user_id, provider, snapshot.activities),
            sleep=await self.save_sleep(user_id, provider, snapshot.sleep),
            dailies=await self.save_dailies(user_id, provider, snapshot.dailies),
        )

        # Last step, and the only one that marks the sync successful
        await self._connections.mark_synced(user_id, provider)

        logger.debug(
            "Saved %s/%s: %d activities, %d sleep, %d dailies",
            user_id, provider, result.activities, result.sleep, result.dailies,
        )
        return result

    async def save_activities(
        self, user_id: str, provider: str, activities: list[NormalizedActivity]
    ) -> int:
        records = _last_wins(activities, lambda a: record_key(user_id, provider, a.external_id))
        for a in records:
            async with self._db.connection() as conn:
                await self._write_raw(conn, user_id, provider, "activity", a.external_id, a)
                await conn.execute(
                    UPSERT_ACTIVITY,
                    user_id, provider, a.external_id, a.activity_type, a.start_time,
                    a.end_time, a.duration_seconds, a.calories, a.distance_meters,
                    a.steps, a.avg_heart_rate, a.max_heart_rate, a.raw,
                )
        return len(records)

    async def save_sleep(
        self, user_id: str, provider: str, sleep: list[NormalizedSleep]
    ) -> int:
        records = _last_wins(sleep, lambda s: record_key(user_id, provider, s.external_id))
        for s in records:
            async with self._db.connection() as conn:
                await self._write_raw(conn, user_id, provider, "sleep", s.external_id, s)
                await conn.execute(
                    UPSERT_SLEEP,
                    user_id, provider, s.external_id, s.date, s.start_time, s.end_time,
                    s.duration_seconds, s.deep_sleep_seconds, s.light_sleep_seconds,
                    s.rem_sleep_seconds, s.awake_seconds, s.sleep_score, s.stages, s.raw,
                )
        return len(records)

    async def save_dailies(
        self, user_id: str, provider: str, dailies: list[NormalizedDaily]
    ) -> int:
        records = _last_wins(dailies, lambda d: daily_key(user_id, provider, d.date))
        for d in records:
            async with self._db.connection() as conn:
                await self._write_raw(conn, user_id, provider, "daily", d.external_id, d)
                await conn.execute(
                    UPSERT_DAILY,
                    user_id, provider, d.date, d.external_id, d.steps, d.calories,
                    d.distance_meters, d.active_minutes, d.resting_heart_rate,
                    d.avg_heart_rate, d.max_heart_rate, d.stress_level, d.floors_climbed,
                    d.raw,
                )
        return len(records)

    @staticmethod
    async def _write_raw(conn, user_id: str, provider: str, data_type: str, source_id: str, record) -> None:
        await conn.execute(
            UPSERT_RAW_INGEST,
            user_id, provider, data_type, source_id, record.observed_date, record.raw,
            payload_content_hash(record.raw),
        )
