"""Durable Postgres-backed job queue.

Jobs live in ``sync_jobs`` and recurring triggers in ``job_schedules``, so a
process restart loses neither pending nor scheduled work.

Architecture:
    1. ``enqueue()`` inserts a row in state ``created``.  The caller gets the
       job id back: acknowledgment of enqueue, not of execution.
    2. Each registered job name gets ``concurrency`` polling slots.  A slot
       claims one row with ``SELECT … FOR UPDATE SKIP LOCKED`` and flips it to
       ``active``, so no two workers (in any process) own the same job.
    3. The handler runs under ``asyncio.wait_for`` with the job's timeout.
       Success → ``completed``.  Exception or timeout → ``retry`` with
       (exponential) delay while retries remain, else ``failed`` and an
       error-level log for operators.  A singleton job that cannot go back
       to ``retry`` because a newer job with its key is already waiting is
       closed as ``completed`` (superseded); the waiting job does the work.
    4. A maintenance loop fires due cron schedules, resets ``active`` jobs whose
       worker died (expiry) into the retry path, and purges old completed jobs.

Delivery is at-least-once: a handler can see the same job twice after a
crash, so handlers must be idempotent.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import asyncpg
from apscheduler.triggers.cron import CronTrigger

from pulsesync.config import Settings
from pulsesync.exceptions import JobTimeoutError
from pulsesync.services.database import Database

logger = logging.getLogger("pulsesync.queue")

# Extra time past a job's own timeout before maintenance treats it as orphaned
_EXPIRY_GRACE_SECONDS = 60


class JobState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"


@dataclass
class Job:
    """A claimed queue row, as seen by a handler."""

    id: uuid.UUID
    name: str
    data: dict = field(default_factory=dict)
    state: JobState = JobState.ACTIVE
    retry_count: int = 0
    retry_limit: int = 3
    retry_delay: int = 30
    retry_backoff: bool = True
    expire_in_seconds: int = 900
    singleton_key: str | None = None
    started_on: datetime | None = None
    created_on: datetime | None = None

    @classmethod
    def from_record(cls, row: Any) -> "Job":
        return cls(
            id=row["id"],
            name=row["name"],
            data=row["data"] or {},
            state=JobState(row["state"]),
            retry_count=row["retry_count"],
            retry_limit=row["retry_limit"],
            retry_delay=row["retry_delay"],
            retry_backoff=row["retry_backoff"],
            expire_in_seconds=row["expire_in_seconds"],
            singleton_key=row["singleton_key"],
            started_on=row["started_on"],
            created_on=row["created_on"],
        )

    @property
    def next_retry_delay(self) -> int:
        """Seconds to wait before the next attempt."""
        if self.retry_backoff:
            return self.retry_delay * (2 ** self.retry_count)
        return self.retry_delay


JobHandler = Callable[[Job], Awaitable[Any]]


def make_trigger(crontab: str) -> CronTrigger:
    """Build a UTC CronTrigger from a 5-field (or 6-field, seconds first) crontab."""
    parts = crontab.split()
    if len(parts) == 5:
        # minute hour day month day_of_week
        return CronTrigger.from_crontab(crontab, timezone=timezone.utc)
    if len(parts) == 6:
        # second minute hour day month day_of_week
        sec, minute, hour, day, month, dow = parts
        return CronTrigger(
            second=sec, minute=minute, hour=hour, day=day, month=month,
            day_of_week=dow, timezone=timezone.utc,
        )
    raise ValueError(f"Invalid crontab '{crontab}': expected 5 or 6 fields")


def next_fire_time(crontab: str, now: datetime | None = None) -> datetime:
    """Return the first fire time of ``crontab`` strictly after ``now``."""
    now = now or datetime.now(timezone.utc)
    # CronTrigger includes ``now`` itself when it lands exactly on a fire time
    fire = make_trigger(crontab).get_next_fire_time(None, now + timedelta(microseconds=1))
    if fire is None:
        raise ValueError(f"Crontab '{crontab}' never fires")
    return fire


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_INSERT_JOB = """
INSERT INTO sync_jobs (
    name, data, retry_limit, retry_delay, retry_backoff, expire_in_seconds,
    singleton_key, start_after
)
VALUES ($1, $2, $3, $4, $5, $6, $7, COALESCE($8, NOW()))
ON CONFLICT (name, singleton_key)
    WHERE singleton_key IS NOT NULL AND state IN ('created', 'retry')
    DO NOTHING
RETURNING id
"""

_CLAIM_JOB = """
UPDATE sync_jobs
SET state = 'active', started_on = NOW()
WHERE id = (
    SELECT id FROM sync_jobs
    WHERE name = $1 AND state IN ('created', 'retry') AND start_after <= NOW()
    ORDER BY created_on
    LIMIT 1
    FOR UPDATE SKIP LOCKED
)
RETURNING *
"""

_COMPLETE_JOB = """
UPDATE sync_jobs
SET state = 'completed', completed_on = NOW(), output = $3
WHERE id = $1 AND state = 'active' AND started_on = $2
"""

_RETRY_JOB = """
UPDATE sync_jobs
SET state = 'retry',
    retry_count = retry_count + 1,
    start_after = NOW() + make_interval(secs => $3),
    started_on = NULL,
    output = $4
WHERE id = $1 AND state = 'active' AND started_on = $2
"""

_FAIL_JOB = """
UPDATE sync_jobs
SET state = 'failed', completed_on = NOW(), output = $3
WHERE id = $1 AND state = 'active' AND started_on = $2
"""

# Closes a failed singleton job whose move back to 'retry' would collide
# with a newer waiting job holding the same key.
_SUPERSEDE_JOB = """
UPDATE sync_jobs
SET state = 'completed', completed_on = NOW(), output = $3
WHERE id = $1 AND state = 'active' AND started_on = $2
RETURNING id, name, state, data
"""

_ORPHANED_JOBS = """
SELECT id, started_on FROM sync_jobs
WHERE state = 'active'
  AND started_on + make_interval(secs => expire_in_seconds + $1) < NOW()
ORDER BY started_on
"""

_EXPIRE_JOB = """
UPDATE sync_jobs
SET state = CASE WHEN retry_count < retry_limit THEN 'retry' ELSE 'failed' END,
    retry_count = CASE WHEN retry_count < retry_limit THEN retry_count + 1 ELSE retry_count END,
    completed_on = CASE WHEN retry_count < retry_limit THEN NULL ELSE NOW() END,
    start_after = NOW(),
    started_on = NULL,
    output = $3
WHERE id = $1 AND state = 'active' AND started_on = $2
RETURNING id, name, state, data
"""

_PURGE_COMPLETED = """
DELETE FROM sync_jobs
WHERE state = 'completed' AND completed_on < NOW() - make_interval(days => $1)
"""

_UPSERT_SCHEDULE = """
INSERT INTO job_schedules (name, job_name, cron, data, next_run_at)
VALUES ($1, $2, $3, $4, $5)
ON CONFLICT (name) DO UPDATE SET
    job_name = EXCLUDED.job_name,
    data = EXCLUDED.data,
    next_run_at = CASE
        WHEN job_schedules.cron = EXCLUDED.cron THEN job_schedules.next_run_at
        ELSE EXCLUDED.next_run_at
    END,
    cron = EXCLUDED.cron,
    updated_at = NOW()
"""

_DUE_SCHEDULES = """
SELECT name, job_name, cron, data FROM job_schedules
WHERE next_run_at <= NOW()
FOR UPDATE SKIP LOCKED
"""

_ADVANCE_SCHEDULE = """
UPDATE job_schedules
SET last_run_at = NOW(), next_run_at = $2, updated_at = NOW()
WHERE name = $1
"""


class JobQueue:
    """Durable job queue with per-name worker pools and cron schedules.

    Usage::

        queue = JobQueue(db, settings)
        queue.register_worker("wearables.sync", handle_sync)
        await queue.schedule("wearables.daily-fanout", "0 2 * * *")
        await queue.start()
        ...
        await queue.stop()

    The API process never calls ``start()``; it only enqueues.
    """

    def __init__(self, db: Database, settings: Settings) -> None:
        self._db = db
        self._settings = settings
        self._handlers: dict[str, tuple[JobHandler, int]] = {}
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        name: str,
        data: dict | None = None,
        *,
        start_after: datetime | None = None,
        singleton_key: str | None = None,
        conn: Any = None,
    ) -> uuid.UUID | None:
        """Persist a job and return its id.

        Returns None when ``singleton_key`` matches a job of the same name that
        is still waiting (created or retry); nothing is inserted in that case.
        """
        s = self._settings
        args = (
            name, data or {}, s.job_retry_limit, s.job_retry_delay_seconds,
            s.job_retry_backoff, s.job_timeout_seconds, singleton_key, start_after,
        )
        if conn is not None:
            job_id = await conn.fetchval(_INSERT_JOB, *args)
        else:
            job_id = await self._db.fetchval(_INSERT_JOB, *args)

        if job_id is None:
            logger.debug("Job %s skipped: singleton %s already queued", name, singleton_key)
        else:
            logger.debug("Enqueued job %s (%s)", job_id, name)
        return job_id

    async def schedule(
        self, name: str, cron: str, data: dict | None = None, job_name: str | None = None
    ) -> datetime:
        """Register (or update) a recurring trigger.  Returns its next fire time.

        Re-registering with an unchanged crontab keeps the stored next fire
        time, so a worker restart neither skips nor doubles a due run.
        """
        next_run = next_fire_time(cron)
        await self._db.execute(
            _UPSERT_SCHEDULE, name, job_name or name, cron, data or {}, next_run
        )
        logger.info("Schedule registered: %s cron=%r next≈%s", name, cron, next_run.isoformat())
        return next_run

    async def unschedule(self, name: str) -> None:
        await self._db.execute("DELETE FROM job_schedules WHERE name = $1", name)
        logger.info("Schedule removed: %s", name)

    async def stats(self) -> dict[str, dict[str, int]]:
        """Job counts per name and state."""
        rows = await self._db.fetch(
            "SELECT name, state, COUNT(*) AS n FROM sync_jobs GROUP BY name, state"
        )
        counts: dict[str, dict[str, int]] = {}
        for r in rows:
            counts.setdefault(r["name"], {})[r["state"]] = r["n"]
        return counts

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    def register_worker(
        self, name: str, handler: JobHandler, concurrency: int | None = None
    ) -> None:
        """Bind a handler to a job name.  Must be called before ``start()``."""
        if self._running:
            raise RuntimeError("register_worker() must be called before start()")
        slots = concurrency or self._settings.worker_concurrency
        self._handlers[name] = (handler, slots)
        logger.info("Worker registered: %s (concurrency=%d)", name, slots)

    async def start(self) -> None:
        if self._running:
            logger.warning("Job queue already running")
            return

        self._stopping.clear()
        self._running = True
        for name, (_, slots) in self._handlers.items():
            for slot in range(slots):
                self._tasks.append(
                    asyncio.create_task(self._work_loop(name), name=f"{name}#{slot}")
                )
        self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="maintenance"))
        logger.info(
            "Job queue started: %d job type(s), poll_interval=%.1fs",
            len(self._handlers), self._settings.queue_poll_interval_seconds,
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop polling and wait for in-flight handlers to finish.

        Handlers still running after ``timeout`` seconds are cancelled; their
        jobs stay ``active`` and are recovered by expiry on the next start.
        """
        if not self._running:
            return
        logger.info("Job queue stopping")
        self._stopping.set()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._running = False
        logger.info("Job queue stopped")

    # ------------------------------------------------------------------
    # Worker internals
    # ------------------------------------------------------------------

    async def _sleep(self) -> None:
        """Wait one poll interval, waking early on stop()."""
        try:
            await asyncio.wait_for(
                self._stopping.wait(), timeout=self._settings.queue_poll_interval_seconds
            )
        except asyncio.TimeoutError:
            pass

    async def _work_loop(self, name: str) -> None:
        while not self._stopping.is_set():
            try:
                job = await self._claim(name)
            except Exception as exc:
                logger.error("Claim failed for %s: %s", name, exc)
                job = None

            if job is None:
                await self._sleep()
                continue
            try:
                await self.process(job)
            except Exception as exc:
                # Job stays active; expiry hands it back to the retry path
                logger.error("Recording outcome failed for job %s (%s): %s", job.id, name, exc)
                await self._sleep()

    async def _claim(self, name: str) -> Job | None:
        row = await self._db.fetchrow(_CLAIM_JOB, name)
        return Job.from_record(row) if row else None

    async def process(self, job: Job) -> JobState:
        """Run the handler for one claimed job and record the outcome."""
        handler, _ = self._handlers[job.name]
        try:
            await asyncio.wait_for(handler(job), timeout=job.expire_in_seconds)
        except asyncio.TimeoutError:
            error = JobTimeoutError(f"job exceeded {job.expire_in_seconds}s timeout")
            return await self._fail(job, error)
        except Exception as exc:
            return await self._fail(job, exc)

        await self._db.execute(_COMPLETE_JOB, job.id, job.started_on, None)
        logger.debug("Job %s (%s) completed", job.id, job.name)
        return JobState.COMPLETED

    async def _fail(self, job: Job, exc: BaseException) -> JobState:
        output = {"error": f"{type(exc).__name__}: {exc}"}

        if job.retry_count < job.retry_limit:
            delay = job.next_retry_delay
            try:
                await self._db.execute(_RETRY_JOB, job.id, job.started_on, delay, output)
            except asyncpg.UniqueViolationError:
                await self._supersede(job.id, job.started_on, output)
                logger.warning(
                    "Job %s (%s) failed; superseded by a waiting job with key %s: %s",
                    job.id, job.name, job.singleton_key, exc,
                )
                return JobState.COMPLETED
            logger.warning(
                "Job %s (%s) failed, retry %d/%d in %ds: %s",
                job.id, job.name, job.retry_count + 1, job.retry_limit, delay, exc,
            )
            return JobState.RETRY

        await self._db.execute(_FAIL_JOB, job.id, job.started_on, output)
        logger.error(
            "Job %s (%s) failed permanently after %d attempt(s): user=%s provider=%s error=%s",
            job.id, job.name, job.retry_count + 1,
            job.data.get("userId"), job.data.get("provider"), exc,
        )
        return JobState.FAILED

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def _maintenance_loop(self) -> None:
        steps = (self.fire_due_schedules, self.expire_orphaned_jobs, self.purge_completed)
        while not self._stopping.is_set():
            for step in steps:
                try:
                    await step()
                except Exception as exc:
                    logger.error("Queue maintenance step %s failed: %s", step.__name__, exc)
            await self._sleep()

    async def fire_due_schedules(self) -> int:
        """Enqueue one job per due schedule and advance its next fire time.

        Runs in a single transaction with the schedule rows locked, so only
        one worker process fires a given trigger.
        """
        fired = 0
        now = datetime.now(timezone.utc)
        async with self._db.connection() as conn:
            for row in await conn.fetch(_DUE_SCHEDULES):
                await self.enqueue(
                    row["job_name"], row["data"],
                    singleton_key=f"schedule:{row['name']}", conn=conn,
                )
                await conn.execute(_ADVANCE_SCHEDULE, row["name"], next_fire_time(row["cron"], now))
                logger.info("Schedule fired: %s → %s", row["name"], row["job_name"])
                fired += 1
        return fired

    async def expire_orphaned_jobs(self) -> int:
        """Return jobs whose worker vanished mid-run to the retry path.

        Each job is settled on its own, so one conflicting row cannot hold
        back the others.
        """
        output = {"error": "job expired while active"}
        expired = 0
        for orphan in await self._db.fetch(_ORPHANED_JOBS, _EXPIRY_GRACE_SECONDS):
            try:
                row = await self._db.fetchrow(
                    _EXPIRE_JOB, orphan["id"], orphan["started_on"], output
                )
            except asyncpg.UniqueViolationError:
                row = await self._supersede(orphan["id"], orphan["started_on"], output)
                if row is not None:
                    logger.warning(
                        "Job %s (%s) expired; superseded by a waiting job", row["id"], row["name"]
                    )
                    expired += 1
                continue
            if row is None:
                # Settled by its worker since the scan
                continue

            expired += 1
            data = row["data"] or {}
            if row["state"] == JobState.FAILED.value:
                logger.error(
                    "Job %s (%s) expired with no retries left: user=%s provider=%s",
                    row["id"], row["name"], data.get("userId"), data.get("provider"),
                )
            else:
                logger.warning("Job %s (%s) expired while active; requeued", row["id"], row["name"])
        return expired

    async def _supersede(self, job_id: uuid.UUID, started_on: datetime | None, output: dict) -> Any:
        return await self._db.fetchrow(
            _SUPERSEDE_JOB, job_id, started_on, {**output, "superseded": True}
        )

    async def purge_completed(self) -> None:
        await self._db.execute(_PURGE_COMPLETED, self._settings.job_retention_days)
