"""Bearer JWT verification middleware.

Validates the token on every request except public routes and provider
webhooks (those authenticate by HMAC signature instead), then sets
``request.state.auth`` for ``get_current_user``.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from pulsesync.config import Settings, get_settings
from pulsesync.dependencies import AuthContext

logger = logging.getLogger("pulsesync.auth")

PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
}

WEBHOOK_PREFIX = "/webhooks/"


def is_public(path: str) -> bool:
    return (
        path in PUBLIC_PATHS
        or path.startswith("/docs")
        or path.startswith("/redoc")
        or path.startswith(WEBHOOK_PREFIX)
    )


def _unauthorized(detail: str) -> Response:
    return Response(
        content=f'{{"detail":"{detail}"}}',
        status_code=401,
        media_type="application/json",
    )


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Verify bearer JWTs (HS* shared secret or RS*/ES* public key)."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()
        self._key = self._settings.jwt_public_key or self._settings.jwt_secret

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if is_public(request.url.path):
            return await call_next(request)

        # CORS preflight
        if request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return _unauthorized("Missing or invalid Authorization header")

        token = auth_header.removeprefix("Bearer ").strip()

        try:
            payload = pyjwt.decode(
                token,
                self._key,
                algorithms=[self._settings.jwt_algorithm],
                options={"verify_aud": False, "require": ["sub"]},
            )
        except pyjwt.ExpiredSignatureError:
            return _unauthorized("Token expired")
        except pyjwt.InvalidTokenError as exc:
            logger.warning("JWT validation failed: %s", exc)
            return _unauthorized("Invalid token")

        request.state.auth = AuthContext(
            user_id=str(payload["sub"]),
            email=payload.get("email"),
            session_id=payload.get("sid"),
        )
        return await call_next(request)
