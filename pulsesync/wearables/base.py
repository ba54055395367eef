"""Base classes and canonical data models for PulseSync wearable ingestion.

Every provider adapter must subclass WearableAdapter and return the canonical
NormalizedActivity / NormalizedSleep / NormalizedDaily models.  These types
are the only shape the sync worker and storage sink understand; provider
JSON never leaks past the adapter except as the opaque ``raw`` payload.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable

logger = logging.getLogger("pulsesync.wearables")


SUPPORTED_PROVIDERS: tuple[str, ...] = ("garmin", "fitbit")

# async (user_id, provider) -> access token, or None if the user has none
TokenLookup = Callable[[str, str], Awaitable[str | None]]


def parse_provider(value: str) -> str | None:
    """Return the provider slug if supported, else None."""
    if value in SUPPORTED_PROVIDERS:
        return value
    return None


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


# ---------------------------------------------------------------------------
# Canonical / Normalized models
# ---------------------------------------------------------------------------


@dataclass
class NormalizedActivity:
    """Canonical activity / workout record.

    Idempotency key: (user_id, provider, external_id).

    Attributes:
        external_id:       Provider-scoped activity ID.
        activity_type:     Canonical activity type slug.
        start_time:        UTC start timestamp.
        end_time:          UTC end timestamp.
        duration_seconds:  Duration in seconds.
        calories:          Calories burned (kcal).
        distance_meters:   Distance in meters.
        steps:             Steps during the activity.
        avg_heart_rate:    Average heart rate (bpm).
        max_heart_rate:    Maximum heart rate (bpm).
        raw:               Original API response for audit/reprocessing.
    """

    external_id: str
    start_time: datetime
    end_time: datetime
    activity_type: str = "other"
    duration_seconds: int | None = None
    calories: int | None = None
    distance_meters: float | None = None
    steps: int | None = None
    avg_heart_rate: int | None = None
    max_heart_rate: int | None = None
    raw: dict = field(default_factory=dict)

    @property
    def observed_date(self) -> date:
        return self.start_time.date()


@dataclass
class NormalizedSleep:
    """Canonical sleep session.

    Idempotency key: (user_id, provider, external_id).  ``date`` is the wake
    date (morning of), which is how both providers label a night.
    """

    external_id: str
    date: date
    start_time: datetime
    end_time: datetime
    duration_seconds: int | None = None
    deep_sleep_seconds: int | None = None
    light_sleep_seconds: int | None = None
    rem_sleep_seconds: int | None = None
    awake_seconds: int | None = None
    sleep_score: int | None = None
    stages: list[dict] = field(default_factory=list)
    raw: dict = field(default_factory=dict)

    @property
    def observed_date(self) -> date:
        return self.date


@dataclass
class NormalizedDaily:
    """Canonical daily summary.  Idempotency key: (user_id, provider, date)."""

    external_id: str
    date: date
    steps: int | None = None
    calories: int | None = None
    distance_meters: float | None = None
    active_minutes: int | None = None
    resting_heart_rate: int | None = None
    avg_heart_rate: int | None = None
    max_heart_rate: int | None = None
    stress_level: int | None = None
    floors_climbed: int | None = None
    raw: dict = field(default_factory=dict)

    @property
    def observed_date(self) -> date:
        return self.date


@dataclass
class SyncSnapshot:
    """One fetch result: everything the storage sink writes in a single save."""

    activities: list[NormalizedActivity] = field(default_factory=list)
    sleep: list[NormalizedSleep] = field(default_factory=list)
    dailies: list[NormalizedDaily] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.activities) + len(self.sleep) + len(self.dailies)


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class WearableAdapter(ABC):
    """Abstract base class for provider adapters.

    Adapters are the only code that talks to provider APIs.  Dates are
    inclusive calendar dates.  Failures must raise (ProviderAPIError or the
    underlying transport error) rather than return partial results, so the
    job queue can retry the whole window.

    Subclasses must implement:
        - get_activities()
        - get_sleep()
        - get_dailies()

    ``backfill()`` has a default built on the three fetchers.
    """

    #: Provider slug (e.g. 'garmin').
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown Provider"

    @abstractmethod
    async def get_activities(
        self, user_id: str, start_date: date, end_date: date
    ) -> list[NormalizedActivity]:
        """Fetch activities whose start falls inside [start_date, end_date]."""

    @abstractmethod
    async def get_sleep(
        self, user_id: str, start_date: date, end_date: date
    ) -> list[NormalizedSleep]:
        """Fetch sleep sessions whose wake date falls inside [start_date, end_date]."""

    @abstractmethod
    async def get_dailies(
        self, user_id: str, start_date: date, end_date: date
    ) -> list[NormalizedDaily]:
        """Fetch one daily summary per calendar date in [start_date, end_date]."""

    async def backfill(
        self, user_id: str, days_back: int, today: date | None = None
    ) -> SyncSnapshot:
        """Bulk historical import for a freshly connected user.

        Args:
            user_id:   Internal user ID.
            days_back: Size of the trailing window, in days.
            today:     Window end (defaults to the current UTC date).

        Returns:
            SyncSnapshot covering [today - days_back, today].
        """
        end = today or utc_today()
        start = end - timedelta(days=days_back)
        logger.info(
            "%s backfill: %s → %s for user %s", self.DISPLAY_NAME, start, end, user_id
        )
        activities, sleep, dailies = await asyncio.gather(
            self.get_activities(user_id, start, end),
            self.get_sleep(user_id, start, end),
            self.get_dailies(user_id, start, end),
        )
        return SyncSnapshot(activities=activities, sleep=sleep, dailies=dailies)

    async def aclose(self) -> None:
        """Release network resources.  Override when the adapter owns a client."""
        return None

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 datetime string to an aware UTC datetime.

        Naive strings are assumed to be UTC.  Returns None if the value is
        None or unparseable.
        """
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @staticmethod
    def _from_epoch(value: object) -> datetime | None:
        if value is None:
            return None
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None


def iter_dates(start_date: date, end_date: date):
    """Yield each calendar date in [start_date, end_date]."""
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)
