"""Scheduler runtime: one asyncio task per job, wall-clock aligned.

Each job loops forever: compute the next fire time from its Cadence, sleep,
run the task function, repeat. Cancelled cleanly on shutdown via
Scheduler.shutdown(). A failing job logs and moves on to its next tick; it
never stops the loop and never touches other jobs.

Cadences are aligned to a fixed UTC anchor (Sunday 1970-01-04 00:00), so
``Cadence(every=1h)`` fires at :00 of every hour and
``Cadence(every=7d, offset=1h)`` fires Sundays at 01:00.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from newsportal import constants as c
from newsportal.auth.failures import AuthFailureTracker
from newsportal.config import Config
from newsportal.keys.manager import KeyManager, RotationPolicy
from newsportal.keys.store import KeyStore
from newsportal.realtime.dispatcher import NotificationDispatcher
from newsportal.scheduler import tasks
from newsportal.scheduler.tasks import TaskResult
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)

CADENCE_ANCHOR = datetime(1970, 1, 4, tzinfo=timezone.utc)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Cadence:
    """Fire every ``every``, shifted by ``offset`` from the anchor."""

    every: timedelta
    offset: timedelta = timedelta(0)

    def __post_init__(self) -> None:
        if self.every <= timedelta(0):
            raise ValueError("Cadence.every must be positive")

    def next_run(self, now: datetime) -> datetime:
        """First fire time strictly after ``now``."""
        base = CADENCE_ANCHOR + self.offset
        periods = (now - base) // self.every
        return base + (periods + 1) * self.every


@dataclass
class Job:
    name: str
    cadence: Cadence
    run: Callable[[], Awaitable[TaskResult]]


class Scheduler:
    """Owns the recurring maintenance jobs and the overlap follow-ups.

    Args:
        config:     Loaded Config (rotation, schedule, security, database).
        manager:    KeyManager; its clock drives the cadences.
        dispatcher: NotificationDispatcher for broadcasts.
        failures:   AuthFailureTracker read by the security check.
        store:      KeyStore, needed for backups.
        started_at: Process start, for heartbeat uptime.
        sleep:      Injected in tests to avoid real waits.
    """

    def __init__(
        self,
        config: Config,
        manager: KeyManager,
        dispatcher: NotificationDispatcher,
        failures: AuthFailureTracker,
        store: KeyStore,
        started_at: Optional[datetime] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.manager = manager
        self.dispatcher = dispatcher
        self.failures = failures
        self.store = store
        self.started_at = started_at or manager.now()
        self._sleep = sleep
        self._jobs: dict[str, asyncio.Task] = {}
        self._pending: set[asyncio.Task] = set()

    # ── Job table ─────────────────────────────────────────────────────────────

    def build_jobs(self) -> list[Job]:
        schedule = self.config.schedule
        security = self.config.security
        daily = timedelta(days=1)

        jobs = [
            Job(
                "rotate_keys",
                Cadence(timedelta(minutes=schedule.rotation_interval_minutes)),
                self.rotation_tick,
            ),
            Job(
                "cleanup_expired_keys",
                Cadence(timedelta(hours=schedule.cleanup_interval_hours)),
                lambda: tasks.cleanup_expired_keys(self.manager),
            ),
            Job(
                "purge_inactive_keys",
                Cadence(daily, timedelta(minutes=c.INACTIVE_PURGE_HOUR_OFFSET_MINUTES)),
                lambda: tasks.purge_inactive_keys(
                    self.manager, timedelta(days=schedule.inactive_retention_days)
                ),
            ),
            Job(
                "security_check",
                Cadence(daily, timedelta(minutes=c.SECURITY_CHECK_OFFSET_MINUTES)),
                lambda: tasks.security_check(
                    self.manager,
                    self.dispatcher,
                    self.failures,
                    expiry_lookahead=timedelta(days=security.expiry_lookahead_days),
                    failure_window=timedelta(minutes=security.auth_failure_window_minutes),
                    failure_threshold=security.auth_failure_threshold,
                ),
            ),
            Job(
                "broadcast_status",
                Cadence(daily, timedelta(minutes=c.HEARTBEAT_OFFSET_MINUTES)),
                lambda: tasks.broadcast_status(self.dispatcher, self.started_at, self.manager.now),
            ),
        ]
        if schedule.backup_enabled:
            jobs.append(
                Job(
                    "backup_database",
                    Cadence(timedelta(weeks=1), timedelta(minutes=c.BACKUP_OFFSET_MINUTES)),
                    lambda: tasks.backup_database(
                        self.store,
                        self.config.database.backup_dir,
                        self.config.database.backup_keep,
                        self.manager.now,
                    ),
                )
            )
        return jobs

    async def rotation_tick(self) -> TaskResult:
        """Scheduled rotation; under overlap, queue the delayed retirement."""
        result = await tasks.rotate_keys(self.manager, self.dispatcher)
        if result.ok and self.manager.policy is RotationPolicy.OVERLAP:
            self._spawn(self._deactivate_after_grace(), "deactivate_superseded")
        return result

    async def _deactivate_after_grace(self) -> TaskResult:
        await self._sleep(self.config.rotation.grace_period.total_seconds())
        return await tasks.deactivate_superseded_keys(self.manager)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def bootstrap(self) -> bool:
        """Startup rotation, then make sure a valid key exists.

        Returns:
            True if a valid key exists afterwards.
        """
        if self.config.rotation.rotate_on_startup:
            await tasks.rotate_keys(self.manager, self.dispatcher)
        ensured = await tasks.ensure_active_key(self.manager, self.dispatcher)
        return ensured.ok

    def start(self) -> None:
        if not self.config.schedule.enabled:
            logger.info("Scheduler disabled by config")
            return
        for job in self.build_jobs():
            self._jobs[job.name] = self._spawn(self._run_job(job), job.name, pending=False)
        logger.info("Scheduler started", jobs=sorted(self._jobs))

    async def shutdown(self) -> None:
        """Cancel every job loop and pending one-shot task, then wait for them."""
        running = [*self._jobs.values(), *self._pending]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._jobs.clear()
        self._pending.clear()
        logger.info("Scheduler stopped", cancelled=len(running))

    @property
    def job_names(self) -> list[str]:
        return sorted(self._jobs)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _spawn(self, coro: Awaitable, name: str, pending: bool = True) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"scheduler:{name}")
        if pending:
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return task

    async def _run_job(self, job: Job) -> None:
        last_fired: Optional[datetime] = None
        while True:
            try:
                now = self.manager.now()
                # Sleep runs on the monotonic clock; a lagging wall clock must
                # not hand back the boundary that just fired.
                reference = now if last_fired is None else max(now, last_fired)
                next_run = job.cadence.next_run(reference)
                sleep_seconds = (next_run - now).total_seconds()
                logger.debug(
                    "Job scheduled",
                    job=job.name,
                    next_run_utc=next_run.isoformat(),
                    sleep_seconds=sleep_seconds,
                )
                await self._sleep(sleep_seconds)
                last_fired = next_run

                result = await job.run()
                if not result.ok:
                    logger.warning("Job tick failed", job=job.name, error=result.error)

            except asyncio.CancelledError:
                logger.debug("Job cancelled", job=job.name)
                raise

            except Exception as exc:
                logger.error(
                    "Job loop error",
                    job=job.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
