"""Garmin Health API adapter.

API base: https://apis.garmin.com/wellness-api/rest

Endpoints used:
    /dailies     — Daily activity summaries
    /sleeps      — Sleep data
    /activities  — User activities (workouts)

Garmin summary endpoints are queried by *upload* time, in windows of at most
24 hours, so a date range is fetched one day at a time and the summaries are
then filtered back to their calendar dates.  Re-uploads of the same summary
share a ``summaryId``; the last one wins.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, TypeVar

import httpx

from pulsesync.exceptions import ProviderAPIError
from pulsesync.wearables.base import (
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
    TokenLookup,
    WearableAdapter,
    iter_dates,
)

logger = logging.getLogger("pulsesync.wearables.garmin")

_GARMIN_API_BASE = "https://apis.garmin.com/wellness-api/rest"
_MAX_WINDOW_SECONDS = 86400

# Garmin activityType → canonical slug
_GARMIN_ACTIVITY_TYPE_MAP: dict[str, str] = {
    "running": "running",
    "treadmill_running": "running",
    "cycling": "cycling",
    "indoor_cycling": "cycling",
    "lap_swimming": "swimming",
    "open_water_swimming": "swimming",
    "walking": "walking",
    "hiking": "hiking",
    "strength_training": "strength_training",
    "yoga": "yoga",
    "hiit": "hiit",
    "rowing": "rowing",
    "elliptical": "elliptical",
}


T = TypeVar("T", NormalizedActivity, NormalizedSleep)


def _last_by_id(records: Iterable[T]) -> list[T]:
    """Keep the latest upload of each summary, in first-seen order."""
    by_id: dict[str, T] = {}
    for record in records:
        by_id[record.external_id] = record
    return list(by_id.values())


class GarminAdapter(WearableAdapter):
    """Garmin Health API adapter (bearer token)."""

    SOURCE_ID = "garmin"
    DISPLAY_NAME = "Garmin Connect"

    def __init__(
        self,
        token_lookup: TokenLookup,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the Garmin adapter.

        Args:
            token_lookup: Async callable(user_id, provider) → access token.
            http_client:  Optional pre-configured httpx client (useful for testing).
            timeout:      Request timeout in seconds when the adapter owns the client.
        """
        self._token_lookup = token_lookup
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # WearableAdapter interface
    # ------------------------------------------------------------------

    async def get_activities(
        self, user_id: str, start_date: date, end_date: date
    ) -> list[NormalizedActivity]:
        items = await self._fetch_range(user_id, "activities", start_date, end_date)
        activities = [self.normalize_activity(item) for item in items]
        return _last_by_id(
            a for a in activities
            if a is not None and start_date <= a.observed_date <= end_date
        )

    async def get_sleep(
        self, user_id: str, start_date: date, end_date: date
    ) -> list[NormalizedSleep]:
        # A night that ends on start_date may have been uploaded the day before
        items = await self._fetch_range(
            user_id, "sleeps", start_date - timedelta(days=1), end_date
        )
        sleeps = [self.normalize_sleep(item) for item in items]
        return _last_by_id(s for s in sleeps if s is not None and start_date <= s.date <= end_date)

    async def get_dailies(
        self, user_id: str, start_date: date, end_date: date
    ) -> list[NormalizedDaily]:
        items = await self._fetch_range(user_id, "dailies", start_date, end_date)
        by_date: dict[date, NormalizedDaily] = {}
        for item in items:
            daily = self.normalize_daily(item)
            if daily is not None and start_date <= daily.date <= end_date:
                by_date[daily.date] = daily
        return [by_date[d] for d in sorted(by_date)]

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize_activity(self, raw: dict) -> NormalizedActivity | None:
        """Convert one Garmin activity summary to NormalizedActivity."""
        summary_id = raw.get("summaryId") or raw.get("activityId")
        start_time = self._from_epoch(raw.get("startTimeInSeconds"))
        if not summary_id or start_time is None:
            logger.debug("Skipping Garmin activity without id/start: %r", raw)
            return None

        duration = self._safe_int(raw.get("durationInSeconds"))
        activity_type_raw = str(raw.get("activityType", "other")).lower()

        return NormalizedActivity(
            external_id=str(summary_id),
            activity_type=_GARMIN_ACTIVITY_TYPE_MAP.get(activity_type_raw, "other"),
            start_time=start_time,
            end_time=start_time + timedelta(seconds=duration or 0),
            duration_seconds=duration,
            calories=self._safe_int(raw.get("activeKilocalories")),
            distance_meters=self._safe_float(raw.get("distanceInMeters")),
            steps=self._safe_int(raw.get("steps")),
            avg_heart_rate=self._safe_int(raw.get("averageHeartRateInBeatsPerMinute")),
            max_heart_rate=self._safe_int(raw.get("maxHeartRateInBeatsPerMinute")),
            raw=raw,
        )

    def normalize_sleep(self, raw: dict) -> NormalizedSleep | None:
        """Convert one Garmin sleep summary to NormalizedSleep."""
        summary_id = raw.get("summaryId")
        calendar_date = raw.get("calendarDate")
        start_time = self._from_epoch(raw.get("startTimeInSeconds"))
        if not summary_id or not calendar_date or start_time is None:
            logger.debug("Skipping Garmin sleep without id/date/start: %r", raw)
            return None

        duration = self._safe_int(raw.get("durationInSeconds"))
        score = raw.get("overallSleepScore")
        if isinstance(score, dict):
            score = score.get("value")

        stages: list[dict] = []
        for stage, ranges in (raw.get("sleepLevelsMap") or {}).items():
            for r in ranges:
                stages.append({
                    "stage": stage,
                    "start": r.get("startTimeInSeconds"),
                    "end": r.get("endTimeInSeconds"),
                })
        stages.sort(key=lambda s: s["start"] or 0)

        return NormalizedSleep(
            external_id=str(summary_id),
            date=date.fromisoformat(calendar_date[:10]),
            start_time=start_time,
            end_time=start_time + timedelta(seconds=duration or 0),
            duration_seconds=duration,
            deep_sleep_seconds=self._safe_int(raw.get("deepSleepDurationInSeconds")),
            light_sleep_seconds=self._safe_int(raw.get("lightSleepDurationInSeconds")),
            rem_sleep_seconds=self._safe_int(raw.get("remSleepInSeconds")),
            awake_seconds=self._safe_int(raw.get("awakeDurationInSeconds")),
            sleep_score=self._safe_int(score),
            stages=stages,
            raw=raw,
        )

    def normalize_daily(self, raw: dict) -> NormalizedDaily | None:
        """Convert one Garmin daily summary to NormalizedDaily."""
        calendar_date = raw.get("calendarDate")
        if not calendar_date:
            return None

        active_seconds = self._safe_int(raw.get("activeTimeInSeconds"))
        active_kcal = self._safe_int(raw.get("activeKilocalories"))
        bmr_kcal = self._safe_int(raw.get("bmrKilocalories"))
        calories = None
        if active_kcal is not None or bmr_kcal is not None:
            calories = (active_kcal or 0) + (bmr_kcal or 0)

        return NormalizedDaily(
            external_id=str(raw.get("summaryId") or f"{self.SOURCE_ID}:{calendar_date}"),
            date=date.fromisoformat(calendar_date[:10]),
            steps=self._safe_int(raw.get("steps")),
            calories=calories,
            distance_meters=self._safe_float(raw.get("distanceInMeters")),
            active_minutes=active_seconds // 60 if active_seconds is not None else None,
            resting_heart_rate=self._safe_int(raw.get("restingHeartRateInBeatsPerMinute")),
            avg_heart_rate=self._safe_int(raw.get("averageHeartRateInBeatsPerMinute")),
            max_heart_rate=self._safe_int(raw.get("maxHeartRateInBeatsPerMinute")),
            stress_level=self._safe_int(raw.get("averageStressLevel")),
            floors_climbed=self._safe_int(raw.get("floorsClimbed")),
            raw=raw,
        )

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    async def _fetch_range(
        self, user_id: str, resource: str, start_date: date, end_date: date
    ) -> list[dict]:
        token = await self._token_lookup(user_id, self.SOURCE_ID)
        if not token:
            raise ProviderAPIError(self.SOURCE_ID, f"no access token for user {user_id}")

        items: list[dict] = []
        for day in iter_dates(start_date, end_date):
            start_ts = int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())
            params = {
                "uploadStartTimeInSeconds": start_ts,
                "uploadEndTimeInSeconds": start_ts + _MAX_WINDOW_SECONDS,
            }
            page = await self._get(f"{_GARMIN_API_BASE}/{resource}", params, token)
            items.extend(page)
        return items

    async def _get(self, url: str, params: dict, token: str) -> list[dict]:
        """Make an authenticated GET request to the Garmin Health API.

        Raises:
            ProviderAPIError: On transport failures and non-2xx responses.
        """
        try:
            response = await self._http_client.get(
                url, params=params, headers={"Authorization": f"Bearer {token}"}
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Garmin API error: %s %s → %d",
                exc.request.method, exc.request.url, exc.response.status_code,
            )
            raise ProviderAPIError(
                self.SOURCE_ID, f"HTTP {exc.response.status_code}", exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderAPIError(self.SOURCE_ID, str(exc)) from exc

        body = response.json()
        if isinstance(body, dict):
            # Some Garmin endpoints wrap the list in an envelope
            body = next((v for v in body.values() if isinstance(v, list)), [])
        return body
