"""Fitbit Web API adapter (OAuth2 bearer tokens).

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/activities/list.json              — Activity log (paginated)
    /1.2/user/-/sleep/date/{start}/{end}.json   — Sleep logs for a date range
    /1/user/-/activities/date/{date}.json       — Daily activity summary

Fitbit reports local times without an offset; they are stored as UTC-naive
values promoted to UTC, matching what the API returns for the user's
configured timezone.  Distances come back in kilometres for metric accounts.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

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

logger = logging.getLogger("pulsesync.wearables.fitbit")

_FITBIT_API_BASE = "https://api.fitbit.com"
_ACTIVITY_PAGE_SIZE = 100


class FitbitAdapter(WearableAdapter):
    """Fitbit Web API adapter."""

    SOURCE_ID = "fitbit"
    DISPLAY_NAME = "Fitbit"

    def __init__(
        self,
        token_lookup: TokenLookup,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._token_lookup = token_lookup
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            base_url=_FITBIT_API_BASE, timeout=timeout
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # WearableAdapter interface
    # ------------------------------------------------------------------

    async def get_activities(
        self, user_id: str, start_date: date, end_date: date
    ) -> list[NormalizedActivity]:
        token = await self._token(user_id)
        activities: list[NormalizedActivity] = []
        params: dict | None = {
            "afterDate": (start_date - timedelta(days=1)).isoformat(),
            "sort": "asc",
            "offset": 0,
            "limit": _ACTIVITY_PAGE_SIZE,
        }
        url = "/1/user/-/activities/list.json"

        while url:
            body = await self._get(url, params, token)
            for raw in body.get("activities", []):
                activity = self.normalize_activity(raw)
                if activity is None:
                    continue
                if activity.observed_date > end_date:
                    return activities
                if activity.observed_date >= start_date:
                    activities.append(activity)
            # The next link already carries its own query string
            url = (body.get("pagination") or {}).get("next") or ""
            params = None
        return activities

    async def get_sleep(
        self, user_id: str, start_date: date, end_date: date
    ) -> list[NormalizedSleep]:
        token = await self._token(user_id)
        body = await self._get(
            f"/1.2/user/-/sleep/date/{start_date.isoformat()}/{end_date.isoformat()}.json",
            None,
            token,
        )
        sleeps = [self.normalize_sleep(raw) for raw in body.get("sleep", [])]
        return [s for s in sleeps if s is not None]

    async def get_dailies(
        self, user_id: str, start_date: date, end_date: date
    ) -> list[NormalizedDaily]:
        token = await self._token(user_id)
        dailies: list[NormalizedDaily] = []
        for day in iter_dates(start_date, end_date):
            body = await self._get(f"/1/user/-/activities/date/{day.isoformat()}.json", None, token)
            dailies.append(self.normalize_daily(day, body))
        return dailies

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize_activity(self, raw: dict) -> NormalizedActivity | None:
        log_id = raw.get("logId")
        start_time = self._parse_iso_datetime(raw.get("startTime"))
        if not log_id or start_time is None:
            return None

        duration_ms = self._safe_int(raw.get("duration")) or 0
        duration = duration_ms // 1000
        distance_km = self._safe_float(raw.get("distance"))

        return NormalizedActivity(
            external_id=str(log_id),
            activity_type=str(raw.get("activityName", "other")).lower().replace(" ", "_"),
            start_time=start_time,
            end_time=start_time + timedelta(seconds=duration),
            duration_seconds=duration or None,
            calories=self._safe_int(raw.get("calories")),
            distance_meters=distance_km * 1000 if distance_km is not None else None,
            steps=self._safe_int(raw.get("steps")),
            avg_heart_rate=self._safe_int(raw.get("averageHeartRate")),
            max_heart_rate=None,
            raw=raw,
        )

    def normalize_sleep(self, raw: dict) -> NormalizedSleep | None:
        log_id = raw.get("logId")
        date_of_sleep = raw.get("dateOfSleep")
        start_time = self._parse_iso_datetime(raw.get("startTime"))
        end_time = self._parse_iso_datetime(raw.get("endTime"))
        if not log_id or not date_of_sleep or start_time is None or end_time is None:
            return None

        levels = raw.get("levels") or {}
        summary = levels.get("summary") or {}

        def _stage_seconds(*names: str) -> int | None:
            for name in names:
                minutes = self._safe_int((summary.get(name) or {}).get("minutes"))
                if minutes is not None:
                    return minutes * 60
            return None

        duration_ms = self._safe_int(raw.get("duration"))

        return NormalizedSleep(
            external_id=str(log_id),
            date=date.fromisoformat(date_of_sleep[:10]),
            start_time=start_time,
            end_time=end_time,
            duration_seconds=duration_ms // 1000 if duration_ms is not None else None,
            deep_sleep_seconds=_stage_seconds("deep"),
            light_sleep_seconds=_stage_seconds("light", "asleep"),
            rem_sleep_seconds=_stage_seconds("rem"),
            awake_seconds=_stage_seconds("wake", "awake"),
            sleep_score=self._safe_int(raw.get("efficiency")),
            stages=[
                {"stage": d.get("level"), "start": d.get("dateTime"), "seconds": d.get("seconds")}
                for d in levels.get("data", [])
            ],
            raw=raw,
        )

    def normalize_daily(self, day: date, raw: dict) -> NormalizedDaily:
        summary = raw.get("summary") or {}
        total_km = next(
            (
                self._safe_float(d.get("distance"))
                for d in summary.get("distances", [])
                if d.get("activity") == "total"
            ),
            None,
        )
        fairly = self._safe_int(summary.get("fairlyActiveMinutes"))
        very = self._safe_int(summary.get("veryActiveMinutes"))
        active_minutes = None
        if fairly is not None or very is not None:
            active_minutes = (fairly or 0) + (very or 0)

        return NormalizedDaily(
            external_id=f"{self.SOURCE_ID}:{day.isoformat()}",
            date=day,
            steps=self._safe_int(summary.get("steps")),
            calories=self._safe_int(summary.get("caloriesOut")),
            distance_meters=total_km * 1000 if total_km is not None else None,
            active_minutes=active_minutes,
            resting_heart_rate=self._safe_int(summary.get("restingHeartRate")),
            floors_climbed=self._safe_int(summary.get("floors")),
            raw=raw,
        )

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    async def _token(self, user_id: str) -> str:
        token = await self._token_lookup(user_id, self.SOURCE_ID)
        if not token:
            raise ProviderAPIError(self.SOURCE_ID, f"no access token for user {user_id}")
        return token

    async def _get(self, url: str, params: dict | None, token: str) -> dict:
        """Make an authenticated GET request to the Fitbit Web API.

        Raises:
            ProviderAPIError: On transport failures and non-2xx responses
                (429 included; the job queue's backoff handles rate limits).
        """
        try:
            response = await self._http_client.get(
                url, params=params, headers={"Authorization": f"Bearer {token}"}
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Fitbit API error: %s %s → %d",
                exc.request.method, exc.request.url, exc.response.status_code,
            )
            raise ProviderAPIError(
                self.SOURCE_ID, f"HTTP {exc.response.status_code}", exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderAPIError(self.SOURCE_ID, str(exc)) from exc
        return response.json()
