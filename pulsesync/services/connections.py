"""Reads and state transitions for ``wearable_connections``.

Connections are created by the OAuth callback (outside this service); here
they are looked up by the webhook translator, enumerated by the daily
fan-out, read by the sync worker for its watermark, and advanced by the
storage sink.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import asyncpg

from pulsesync.models.wearables import ConnectionRead
from pulsesync.services.database import Database

logger = logging.getLogger("pulsesync.connections")

_COLUMNS = (
    "connection_id, user_id, provider, provider_user_id, status, "
    "last_synced_at, connected_at, disconnected_at"
)


def _to_model(row: asyncpg.Record | None) -> ConnectionRead | None:
    return ConnectionRead.model_validate(dict(row)) if row else None


class ConnectionStore:
    """Queries over wearable_connections."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, user_id: str, provider: str) -> ConnectionRead | None:
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM wearable_connections WHERE user_id = $1 AND provider = $2",
            user_id, provider,
        )
        return _to_model(row)

    async def find_active_by_provider_user(
        self, provider: str, provider_user_id: str
    ) -> ConnectionRead | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_COLUMNS} FROM wearable_connections
            WHERE provider = $1 AND provider_user_id = $2 AND status = 'active'
            LIMIT 1
            """,
            provider, provider_user_id,
        )
        return _to_model(row)

    async def list_for_user(self, user_id: str) -> list[ConnectionRead]:
        rows = await self._db.fetch(
            f"SELECT {_COLUMNS} FROM wearable_connections WHERE user_id = $1 "
            "ORDER BY updated_at DESC",
            user_id,
        )
        return [ConnectionRead.model_validate(dict(r)) for r in rows]

    async def iter_active(self, batch_size: int = 500) -> AsyncIterator[list[ConnectionRead]]:
        """Yield active connections page by page (keyset pagination on connection_id)."""
        last_id: Any = None
        while True:
            if last_id is None:
                rows = await self._db.fetch(
                    f"SELECT {_COLUMNS} FROM wearable_connections WHERE status = 'active' "
                    "ORDER BY connection_id LIMIT $1",
                    batch_size,
                )
            else:
                rows = await self._db.fetch(
                    f"SELECT {_COLUMNS} FROM wearable_connections "
                    "WHERE status = 'active' AND connection_id > $1 "
                    "ORDER BY connection_id LIMIT $2",
                    last_id, batch_size,
                )
            if not rows:
                return
            yield [ConnectionRead.model_validate(dict(r)) for r in rows]
            if len(rows) < batch_size:
                return
            last_id = rows[-1]["connection_id"]

    async def get_access_token(self, user_id: str, provider: str) -> str | None:
        return await self._db.fetchval(
            "SELECT access_token FROM wearable_connections "
            "WHERE user_id = $1 AND provider = $2 AND status = 'active'",
            user_id, provider,
        )

    async def mark_synced(self, user_id: str, provider: str) -> None:
        """Advance the watermark to now and (re)activate the connection."""
        await self._db.execute(
            """
            UPDATE wearable_connections
            SET last_synced_at = NOW(), status = 'active', disconnected_at = NULL,
                updated_at = NOW()
            WHERE user_id = $1 AND provider = $2
            """,
            user_id, provider,
        )

    async def disconnect(self, user_id: str, provider: str) -> bool:
        """Mark a connection disconnected.  Returns False if none exists."""
        status = await self._db.execute(
            """
            UPDATE wearable_connections
            SET status = 'disconnected',
                disconnected_at = COALESCE(disconnected_at, NOW()),
                updated_at = NOW()
            WHERE user_id = $1 AND provider = $2
            """,
            user_id, provider,
        )
        found = status != "UPDATE 0"
        if found:
            logger.info("Connection disconnected: user=%s provider=%s", user_id, provider)
        return found
