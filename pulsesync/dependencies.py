"""Shared FastAPI dependencies injected into route handlers.

Service objects (queue, connection store, webhook translator and verifier)
are built once in the app lifespan and stored on ``app.state``; the getters
below hand them to routes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from pulsesync.config import Settings, get_settings
from pulsesync.services.connections import ConnectionStore
from pulsesync.services.database import Database
from pulsesync.services.queue import JobQueue
from pulsesync.webhooks.signature import SignatureVerifier
from pulsesync.webhooks.translator import WebhookTranslator


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller extracted from the bearer JWT."""

    user_id: str  # JWT "sub"
    email: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Return the caller set on ``request.state.auth`` by the auth middleware."""
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_database(request: Request) -> Database:
    return request.app.state.db


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_connections(request: Request) -> ConnectionStore:
    return request.app.state.connections


def get_translator(request: Request) -> WebhookTranslator:
    return request.app.state.translator


def get_verifier(request: Request) -> SignatureVerifier:
    return request.app.state.verifier


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
DB = Annotated[Database, Depends(get_database)]
Queue = Annotated[JobQueue, Depends(get_queue)]
Connections = Annotated[ConnectionStore, Depends(get_connections)]
Translator = Annotated[WebhookTranslator, Depends(get_translator)]
Verifier = Annotated[SignatureVerifier, Depends(get_verifier)]
