"""Tests for the Postgres job queue: outcome transitions, schedules, cron."""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from pulsesync.services.queue import Job, JobQueue, JobState, next_fire_time

NOW = datetime(2026, 3, 10, 1, 0, tzinfo=timezone.utc)


@pytest.fixture
def conn() -> MagicMock:
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock(return_value=uuid.uuid4())
    conn.execute = AsyncMock(return_value="UPDATE 1")
    return conn


@pytest.fixture
def db(conn) -> MagicMock:
    db = MagicMock()
    db.execute = AsyncMock(return_value="UPDATE 1")
    db.fetchval = AsyncMock(return_value=uuid.uuid4())
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])

    @asynccontextmanager
    async def connection():
        yield conn

    db.connection = connection
    return db


@pytest.fixture
def queue(db, settings) -> JobQueue:
    return JobQueue(db, settings)


def _job(**overrides) -> Job:
    fields = dict(
        id=uuid.uuid4(),
        name="wearables.sync",
        data={"userId": "u1", "provider": "garmin"},
        retry_count=0,
        retry_limit=3,
        retry_delay=30,
        retry_backoff=True,
        expire_in_seconds=900,
        started_on=NOW,
    )
    fields.update(overrides)
    return Job(**fields)


def _last_update(db) -> tuple[str, tuple]:
    args = db.execute.await_args.args
    return args[0], args[1:]


class TestProcess:
    @pytest.mark.asyncio
    async def test_success_completes(self, queue, db):
        queue.register_worker("wearables.sync", AsyncMock(return_value=None))
        job = _job()

        assert await queue.process(job) == JobState.COMPLETED
        query, args = _last_update(db)
        assert "state = 'completed'" in query
        assert args[:2] == (job.id, NOW)

    @pytest.mark.asyncio
    async def test_failure_with_retries_left_schedules_retry(self, queue, db):
        queue.register_worker("wearables.sync", AsyncMock(side_effect=RuntimeError("garmin 503")))

        assert await queue.process(_job()) == JobState.RETRY
        query, args = _last_update(db)
        assert "state = 'retry'" in query
        assert args[2] == 30
        assert args[3] == {"error": "RuntimeError: garmin 503"}

    @pytest.mark.asyncio
    async def test_retry_delay_backs_off_exponentially(self, queue, db):
        queue.register_worker("wearables.sync", AsyncMock(side_effect=RuntimeError("boom")))

        await queue.process(_job(retry_count=2))
        _, args = _last_update(db)
        assert args[2] == 120

    @pytest.mark.asyncio
    async def test_fixed_delay_without_backoff(self, queue, db):
        queue.register_worker("wearables.sync", AsyncMock(side_effect=RuntimeError("boom")))

        await queue.process(_job(retry_count=2, retry_backoff=False))
        _, args = _last_update(db)
        assert args[2] == 30

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_with_error_log(self, queue, db, caplog):
        caplog.set_level("ERROR", logger="pulsesync.queue")
        queue.register_worker("wearables.sync", AsyncMock(side_effect=RuntimeError("boom")))

        assert await queue.process(_job(retry_count=3)) == JobState.FAILED
        query, _ = _last_update(db)
        assert "state = 'failed'" in query
        assert "failed permanently" in caplog.text
        assert "user=u1" in caplog.text
        assert "provider=garmin" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_goes_through_retry_path(self, queue, db):
        async def slow(job):
            await asyncio.sleep(5)

        queue.register_worker("wearables.sync", slow)

        assert await queue.process(_job(expire_in_seconds=0.05)) == JobState.RETRY
        _, args = _last_update(db)
        assert args[3]["error"].startswith("JobTimeoutError")


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_returns_job_id(self, queue, db, settings):
        job_id = uuid.uuid4()
        db.fetchval.return_value = job_id

        result = await queue.enqueue("wearables.backfill", {"userId": "u1"})

        assert result == job_id
        args = db.fetchval.await_args.args
        assert args[1:8] == (
            "wearables.backfill", {"userId": "u1"}, settings.job_retry_limit,
            settings.job_retry_delay_seconds, settings.job_retry_backoff,
            settings.job_timeout_seconds, None,
        )

    @pytest.mark.asyncio
    async def test_singleton_conflict_returns_none(self, queue, db):
        db.fetchval.return_value = None
        assert await queue.enqueue("wearables.sync", {}, singleton_key="sync:u1:garmin") is None


class TestSchedules:
    @pytest.mark.asyncio
    async def test_due_schedule_enqueues_and_advances(self, queue, conn):
        conn.fetch.return_value = [{
            "name": "wearables.daily-fanout",
            "job_name": "wearables.daily-fanout",
            "cron": "0 2 * * *",
            "data": {},
        }]

        assert await queue.fire_due_schedules() == 1

        insert_args = conn.fetchval.await_args.args
        assert insert_args[1] == "wearables.daily-fanout"
        assert insert_args[7] == "schedule:wearables.daily-fanout"
        advance_args = conn.execute.await_args.args
        assert advance_args[1] == "wearables.daily-fanout"
        assert advance_args[2] > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_schedule_upserts_with_next_fire_time(self, queue, db):
        next_run = await queue.schedule("wearables.daily-fanout", "0 2 * * *", {})
        args = db.execute.await_args.args
        assert args[1:5] == ("wearables.daily-fanout", "wearables.daily-fanout", "0 2 * * *", {})
        assert args[5] == next_run
        assert (next_run.hour, next_run.minute) == (2, 0)

    @pytest.mark.asyncio
    async def test_unschedule_deletes_row(self, queue, db):
        await queue.unschedule("wearables.daily-fanout")
        query, args = _last_update(db)
        assert query.startswith("DELETE FROM job_schedules")
        assert args == ("wearables.daily-fanout",)


def _row(**overrides) -> dict:
    job = _job(**overrides)
    return {
        "id": job.id, "name": job.name, "data": job.data, "state": "active",
        "retry_count": job.retry_count, "retry_limit": job.retry_limit,
        "retry_delay": job.retry_delay, "retry_backoff": job.retry_backoff,
        "expire_in_seconds": job.expire_in_seconds, "singleton_key": job.singleton_key,
        "started_on": job.started_on, "created_on": NOW,
    }


def _singleton_conflict() -> asyncpg.UniqueViolationError:
    return asyncpg.UniqueViolationError(
        'duplicate key value violates unique constraint "idx_sync_jobs_singleton"'
    )


class TestSingletonCollisions:
    @pytest.mark.asyncio
    async def test_retry_blocked_by_waiting_job_is_superseded(self, queue, db, caplog):
        caplog.set_level("WARNING", logger="pulsesync.queue")
        db.execute.side_effect = _singleton_conflict()
        job = _job(singleton_key="sync:u1:garmin")
        db.fetchrow.return_value = {"id": job.id, "name": job.name, "state": "completed", "data": job.data}
        queue.register_worker("wearables.sync", AsyncMock(side_effect=RuntimeError("garmin 503")))

        assert await queue.process(job) == JobState.COMPLETED

        query, *args = db.fetchrow.await_args.args
        assert "state = 'completed'" in query
        assert args[:2] == [job.id, NOW]
        assert args[2] == {"error": "RuntimeError: garmin 503", "superseded": True}
        assert "superseded" in caplog.text

    @pytest.mark.asyncio
    async def test_exhausted_job_never_collides(self, queue, db):
        queue.register_worker("wearables.sync", AsyncMock(side_effect=RuntimeError("boom")))

        assert await queue.process(_job(retry_count=3, singleton_key="sync:u1:garmin")) == JobState.FAILED
        db.fetchrow.assert_not_awaited()


class TestExpiry:
    @pytest.mark.asyncio
    async def test_each_orphan_settled_independently(self, queue, db, caplog):
        caplog.set_level("WARNING", logger="pulsesync.queue")
        blocked, requeued, exhausted = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        db.fetch.return_value = [
            {"id": blocked, "started_on": NOW},
            {"id": requeued, "started_on": NOW},
            {"id": exhausted, "started_on": NOW},
        ]
        db.fetchrow.side_effect = [
            _singleton_conflict(),
            {"id": blocked, "name": "wearables.sync", "state": "completed", "data": {}},
            {"id": requeued, "name": "wearables.sync", "state": "retry", "data": {}},
            {"id": exhausted, "name": "wearables.sync", "state": "failed",
             "data": {"userId": "u1", "provider": "fitbit"}},
        ]

        assert await queue.expire_orphaned_jobs() == 3

        queries = [c.args[0] for c in db.fetchrow.await_args_list]
        assert "CASE WHEN retry_count < retry_limit" in queries[0]
        assert "state = 'completed'" in queries[1]
        assert [c.args[1] for c in db.fetchrow.await_args_list] == [blocked, blocked, requeued, exhausted]
        errors = [r for r in caplog.records if r.levelname == "ERROR"]
        assert len(errors) == 1
        assert "provider=fitbit" in errors[0].getMessage()

    @pytest.mark.asyncio
    async def test_job_settled_since_scan_is_not_counted(self, queue, db):
        db.fetch.return_value = [{"id": uuid.uuid4(), "started_on": NOW}]
        db.fetchrow.return_value = None
        assert await queue.expire_orphaned_jobs() == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_register_after_start_rejected(self, queue):
        queue.register_worker("wearables.sync", AsyncMock())
        await queue.start()
        try:
            assert queue.running
            with pytest.raises(RuntimeError):
                queue.register_worker("wearables.backfill", AsyncMock())
        finally:
            await queue.stop(timeout=1)
        assert not queue.running



    @pytest.mark.asyncio
    async def test_slot_keeps_polling_after_outcome_write_fails(self, db, settings, caplog):
        caplog.set_level("ERROR", logger="pulsesync.queue")
        settings.queue_poll_interval_seconds = 0.01
        claimable = [_row(singleton_key="sync:u1:garmin")]
        db.fetchrow.side_effect = lambda *args: claimable.pop() if claimable else None
        db.execute.side_effect = RuntimeError("connection reset")
        queue = JobQueue(db, settings)
        queue.register_worker(
            "wearables.sync", AsyncMock(side_effect=RuntimeError("garmin 503")), concurrency=1
        )

        await queue.start()
        try:
            await _wait_until(lambda: db.fetchrow.await_count >= 3)
            slots = [t for t in queue._tasks if t.get_name().startswith("wearables.sync")]
            assert len(slots) == 1
            assert not slots[0].done()
        finally:
            await queue.stop(timeout=1)

        assert "Recording outcome failed" in caplog.text

    @pytest.mark.asyncio
    async def test_failing_maintenance_step_does_not_skip_the_rest(self, db, conn, settings):
        settings.queue_poll_interval_seconds = 0.01
        conn.fetch.side_effect = RuntimeError("schedules table locked")
        queue = JobQueue(db, settings)

        await queue.start()
        try:
            await _wait_until(lambda: db.fetch.await_count >= 1 and db.execute.await_count >= 1)
        finally:
            await queue.stop(timeout=1)

        assert "DELETE FROM sync_jobs" in db.execute.await_args.args[0]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.01)


class TestCron:
    def test_next_fire_same_day(self):
        assert next_fire_time("0 2 * * *", NOW) == datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)

    def test_exact_fire_time_moves_to_next_day(self):
        at_two = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
        assert next_fire_time("0 2 * * *", at_two) == datetime(2026, 3, 11, 2, 0, tzinfo=timezone.utc)

    def test_six_field_crontab_has_seconds(self):
        fire = next_fire_time("30 0 2 * * *", NOW)
        assert fire == datetime(2026, 3, 10, 2, 0, 30, tzinfo=timezone.utc)

    def test_invalid_crontab(self):
        with pytest.raises(ValueError):
            next_fire_time("every day", NOW)
