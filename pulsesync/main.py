"""PulseSync API — FastAPI application entry point.

Run locally:
    uvicorn pulsesync.main:app --reload --port 8000

The API process only enqueues jobs; run ``python -m pulsesync.worker``
alongside it to execute them.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pulsesync.config import Settings, configure_logging, get_settings
from pulsesync.middleware.auth import JWTAuthMiddleware
from pulsesync.middleware.rate_limit import RateLimitMiddleware
from pulsesync.middleware.security import SecurityHeadersMiddleware
from pulsesync.routers import health, wearables, webhooks
from pulsesync.services.connections import ConnectionStore
from pulsesync.services.database import Database
from pulsesync.services.queue import JobQueue
from pulsesync.webhooks.signature import SignatureVerifier
from pulsesync.webhooks.translator import WebhookTranslator

logger = logging.getLogger("pulsesync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the service objects the routes depend on, and tear them down."""
    settings: Settings = app.state.settings
    logger.info("Starting PulseSync API v%s [%s]", settings.app_version, settings.environment)

    db = Database(settings)
    await db.start()
    await db.apply_schema()

    queue = JobQueue(db, settings)
    connections = ConnectionStore(db)
    app.state.db = db
    app.state.queue = queue
    app.state.connections = connections
    app.state.translator = WebhookTranslator(queue, connections, settings)
    app.state.verifier = SignatureVerifier.from_settings(settings)

    yield

    await db.stop()
    logger.info("PulseSync API shut down")


# ---------- App factory ----------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="PulseSync API",
        description="Wearable data ingestion: provider webhooks, backfill and sync jobs.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ---------- Middleware (last added runs first) ----------

    app.add_middleware(SecurityHeadersMiddleware, settings=settings)
    app.add_middleware(RateLimitMiddleware, settings=settings)
    app.add_middleware(JWTAuthMiddleware, settings=settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
    )

    # ---------- Routes ----------
    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(wearables.router)

    return app


app = create_app()
