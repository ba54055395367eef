"""Job names, payload shapes, and the sync window policy.

Payload keys are camelCase on the wire (they are stored verbatim as the
queue row's ``data``), snake_case in Python.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum

from pulsesync.exceptions import UnsupportedProviderError
from pulsesync.wearables.base import parse_provider, utc_today

logger = logging.getLogger("pulsesync.wearables.sync.jobs")

DEFAULT_BACKFILL_DAYS = 60
DEFAULT_TRAILING_DAYS = 2


class JobType(str, Enum):
    BACKFILL = "wearables.backfill"
    SYNC = "wearables.sync"
    DAILY_FANOUT = "wearables.daily-fanout"


def _require_provider(value: object) -> str:
    provider = parse_provider(str(value or ""))
    if provider is None:
        raise UnsupportedProviderError(str(value))
    return provider


@dataclass(frozen=True)
class BackfillJobData:
    user_id: str
    provider: str
    days_back: int = DEFAULT_BACKFILL_DAYS

    @classmethod
    def from_payload(cls, data: dict, default_days: int = DEFAULT_BACKFILL_DAYS) -> "BackfillJobData":
        return cls(
            user_id=str(data["userId"]),
            provider=_require_provider(data.get("provider")),
            days_back=int(data.get("daysBack") or default_days),
        )

    def to_payload(self) -> dict:
        return {"userId": self.user_id, "provider": self.provider, "daysBack": self.days_back}


@dataclass(frozen=True)
class SyncJobData:
    user_id: str
    provider: str
    start_date: date | None = None
    end_date: date | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "SyncJobData":
        start = data.get("startDate")
        end = data.get("endDate")
        return cls(
            user_id=str(data["userId"]),
            provider=_require_provider(data.get("provider")),
            start_date=date.fromisoformat(start) if start else None,
            end_date=date.fromisoformat(end) if end else None,
        )

    def to_payload(self) -> dict:
        payload: dict = {"userId": self.user_id, "provider": self.provider}
        if self.start_date:
            payload["startDate"] = self.start_date.isoformat()
        if self.end_date:
            payload["endDate"] = self.end_date.isoformat()
        return payload


@dataclass(frozen=True)
class SyncWindow:
    start_date: date
    end_date: date

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days + 1


def trailing_window(trailing_days: int = DEFAULT_TRAILING_DAYS, today: date | None = None) -> SyncWindow:
    """[today - trailing_days, today]: the canonical incremental window."""
    end = today or utc_today()
    return SyncWindow(start_date=end - timedelta(days=trailing_days), end_date=end)


def default_sync_window(
    last_synced_at: datetime | None,
    trailing_days: int = DEFAULT_TRAILING_DAYS,
    today: date | None = None,
) -> SyncWindow:
    """Window for a SYNC job that carries no explicit dates.

    The window always re-pulls the trailing ``trailing_days`` so late or
    corrected provider data is picked up.  A fresher watermark never shrinks
    it below that, and an older watermark is clamped to it: data between an
    old watermark and the window start is the job of a backfill.
    """
    window = trailing_window(trailing_days, today)
    if last_synced_at is not None and last_synced_at.date() < window.start_date:
        logger.info(
            "Watermark %s is older than the %d-day sync window; clamping to %s",
            last_synced_at.isoformat(), trailing_days, window.start_date,
        )
    return window


def resolve_sync_window(
    job: SyncJobData,
    last_synced_at: datetime | None,
    trailing_days: int = DEFAULT_TRAILING_DAYS,
    today: date | None = None,
) -> SyncWindow:
    """Default window with any explicit bound from the job payload applied."""
    window = default_sync_window(last_synced_at, trailing_days, today)
    start = job.start_date or window.start_date
    end = job.end_date or window.end_date
    if start > end:
        # Only one bound was explicit and it lies outside the default window
        start, end = (start, start) if job.start_date else (end, end)
    return SyncWindow(start_date=start, end_date=end)
