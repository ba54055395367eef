"""Fixtures for sync-layer tests: a scriptable adapter and sample records."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from pulsesync.wearables.adapters import AdapterRegistry
from pulsesync.wearables.base import (
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
    SyncSnapshot,
    WearableAdapter,
)


class ScriptedAdapter(WearableAdapter):
    """Returns preset records and records every fetch window it was asked for."""

    SOURCE_ID = "garmin"
    DISPLAY_NAME = "Scripted"

    def __init__(self) -> None:
        self.activities: list[NormalizedActivity] = []
        self.sleep: list[NormalizedSleep] = []
        self.dailies: list[NormalizedDaily] = []
        self.error: Exception | None = None
        self.calls: list[tuple[str, str, date, date]] = []

    def _record(self, kind: str, user_id: str, start: date, end: date) -> None:
        self.calls.append((kind, user_id, start, end))
        if self.error is not None:
            raise self.error

    async def get_activities(self, user_id, start_date, end_date):
        self._record("activities", user_id, start_date, end_date)
        return list(self.activities)

    async def get_sleep(self, user_id, start_date, end_date):
        self._record("sleep", user_id, start_date, end_date)
        return list(self.sleep)

    async def get_dailies(self, user_id, start_date, end_date):
        self._record("dailies", user_id, start_date, end_date)
        return list(self.dailies)

    def windows(self) -> set[tuple[date, date]]:
        return {(start, end) for _, _, start, end in self.calls}


def _at(day: date, hour: int) -> datetime:
    return datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)


@pytest.fixture
def scripted_adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def adapters(scripted_adapter: ScriptedAdapter) -> AdapterRegistry:
    return AdapterRegistry({"garmin": scripted_adapter})


@pytest.fixture
def sample_snapshot(today: date) -> SyncSnapshot:
    yesterday = today - timedelta(days=1)
    return SyncSnapshot(
        activities=[
            NormalizedActivity(
                external_id="act-1",
                activity_type="running",
                start_time=_at(yesterday, 7),
                end_time=_at(yesterday, 8),
                duration_seconds=3600,
                calories=540,
                distance_meters=10000.0,
                raw={"summaryId": "act-1", "activityType": "RUNNING"},
            ),
            NormalizedActivity(
                external_id="act-2",
                activity_type="cycling",
                start_time=_at(today, 17),
                end_time=_at(today, 18),
                duration_seconds=3600,
                raw={"summaryId": "act-2", "activityType": "CYCLING"},
            ),
        ],
        sleep=[
            NormalizedSleep(
                external_id="sleep-1",
                date=today,
                start_time=_at(yesterday, 23),
                end_time=_at(today, 7),
                duration_seconds=28800,
                deep_sleep_seconds=5400,
                raw={"summaryId": "sleep-1"},
            ),
        ],
        dailies=[
            NormalizedDaily(
                external_id="daily-y",
                date=yesterday,
                steps=11234,
                raw={"calendarDate": yesterday.isoformat(), "steps": 11234},
            ),
            NormalizedDaily(
                external_id="daily-t",
                date=today,
                steps=4200,
                raw={"calendarDate": today.isoformat(), "steps": 4200},
            ),
        ],
    )
