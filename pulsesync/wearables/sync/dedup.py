"""Idempotency keys and upsert SQL for wearable data ingestion.

The same provider record can arrive many times: overlapping SYNC windows,
a webhook racing the daily fan-out, or a retried job re-fetching a window.
Every write is therefore an upsert on the record's natural key.

Dedup keys (UNIQUE constraints in schema.sql):
    - wearable_activities: (user_id, provider, external_id)
    - wearable_sleep:      (user_id, provider, external_id)
    - wearable_daily:      (user_id, provider, date)
    - wearable_raw_ingest: (user_id, provider, data_type, source_id)
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import date

logger = logging.getLogger("pulsesync.wearables.sync.dedup")


def record_key(user_id: str, provider: str, external_id: str) -> str:
    """Dedup key for an activity or sleep record.

    Matches the UNIQUE constraint on wearable_activities / wearable_sleep:
    (user_id, provider, external_id).
    """
    return f"{user_id}:{provider}:{external_id}"


def daily_key(user_id: str, provider: str, target_date: date) -> str:
    """Dedup key for a daily summary: (user_id, provider, date)."""
    return f"{user_id}:{provider}:{target_date.isoformat()}"


def payload_content_hash(payload: dict) -> str:
    """Compute a content hash for a raw provider payload.

    Stored on wearable_raw_ingest so a replay can tell whether the provider
    actually changed a record between fetches.

    Args:
        payload: The raw API response dict.

    Returns:
        SHA-256 hex digest of the canonicalized JSON.
    """
    # Sort keys for deterministic serialization
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    now_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes, safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        now_columns:      Timestamp columns set to NOW() on update
                          (defaults to ``updated_at``).

    Returns:
        Parameterized SQL string ($1..$n placeholders, asyncpg style).
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]
    if now_columns is None:
        now_columns = ["updated_at"]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        assignments = [f"{col} = EXCLUDED.{col}" for col in update_columns]
        assignments += [f"{col} = NOW()" for col in now_columns]
        do_clause = f"DO UPDATE SET {', '.join(assignments)}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
