"""In-memory sliding-window rate limiter for the authenticated API.

Provider webhook paths are exempt.  Counts are per process, so a
multi-instance deployment limits per instance.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from pulsesync.config import Settings, get_settings
from pulsesync.middleware.auth import WEBHOOK_PREFIX


@dataclass(frozen=True)
class Decision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class SlidingWindow:
    """Request timestamps per client key, limited to ``limit`` per window."""

    def __init__(self, limit: int, window_seconds: float = 60.0) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = {}

    def hit(self, key: str, now: float) -> Decision:
        hits = self._hits.setdefault(key, deque())
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

        if len(hits) >= self.limit:
            retry_after = int(hits[0] + self.window_seconds - now)
            return Decision(False, 0, max(retry_after, 1))

        hits.append(now)
        return Decision(True, self.limit - len(hits))

    def forget_idle(self, now: float) -> None:
        cutoff = now - self.window_seconds
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._hits[key]

    def __len__(self) -> int:
        return len(self._hits)


def client_key(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        s = settings or get_settings()
        self._window = SlidingWindow(s.rate_limit_per_minute)
        self._last_sweep = time.monotonic()

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path.startswith(WEBHOOK_PREFIX):
            return await call_next(request)

        now = time.monotonic()
        if now - self._last_sweep > self._window.window_seconds:
            self._window.forget_idle(now)
            self._last_sweep = now

        decision = self._window.hit(client_key(request), now)
        if not decision.allowed:
            return JSONResponse(
                {"detail": "Rate limit exceeded"},
                status_code=429,
                headers={"Retry-After": str(decision.retry_after)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self._window.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response
