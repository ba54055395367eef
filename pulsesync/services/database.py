"""Postgres access via asyncpg.

One pool per process, owned by a ``Database`` object that the API lifespan
and the worker bootstrap construct explicitly and pass to collaborators.
Every ``connection()`` block is a single short transaction; nothing in the
service holds a transaction across requests or jobs.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator

import asyncpg

from pulsesync.config import Settings

logger = logging.getLogger("pulsesync.db")

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode json/jsonb columns to Python objects."""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=lambda value: json.dumps(value, default=str),
            decoder=json.loads,
            schema="pg_catalog",
        )


class Database:
    """Connection pool wrapper with an explicit start/stop lifecycle."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._pool: asyncpg.Pool | None = None

    async def start(self) -> None:
        """Create the asyncpg connection pool. Call once at process startup."""
        if self._pool is not None:
            return
        s = self._settings
        self._pool = await asyncpg.create_pool(
            s.database_url,
            min_size=s.db_pool_min_size,
            max_size=s.db_pool_max_size,
            command_timeout=s.db_command_timeout,
            init=_init_connection,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)",
            s.db_pool_min_size,
            s.db_pool_max_size,
        )

    async def stop(self) -> None:
        """Drain the pool. Call at process shutdown."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized — call start() first")
        return self._pool

    async def apply_schema(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        ddl = _SCHEMA_PATH.read_text()
        async with self.connection() as conn:
            await conn.execute(ddl)
        logger.info("Database schema applied")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection wrapped in a transaction.

        Usage::

            async with db.connection() as conn:
                await conn.execute(query, *args)
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args: Any) -> str:
        async with self.connection() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        async with self.connection() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self.connection() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.connection() as conn:
            return await conn.fetchval(query, *args)
