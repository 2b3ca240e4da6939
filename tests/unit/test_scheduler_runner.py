"""Unit tests for Cadence alignment and the Scheduler runtime."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from newsportal.auth.failures import AuthFailureTracker
from newsportal.config import Config
from newsportal.realtime.dispatcher import NotificationDispatcher
from newsportal.realtime.registry import ConnectionRegistry
from newsportal.scheduler.runner import Cadence, Job, Scheduler
from newsportal.scheduler.tasks import TaskResult

UTC = timezone.utc


# ─── Cadence ──────────────────────────────────────────────────────────────────


class TestCadence:
    def test_hourly_on_the_hour(self) -> None:
        cadence = Cadence(timedelta(hours=1))
        assert cadence.next_run(datetime(2026, 3, 2, 12, 30, tzinfo=UTC)) == datetime(2026, 3, 2, 13, 0, tzinfo=UTC)

    def test_exact_tick_schedules_following_tick(self) -> None:
        cadence = Cadence(timedelta(hours=1))
        assert cadence.next_run(datetime(2026, 3, 2, 12, 0, tzinfo=UTC)) == datetime(2026, 3, 2, 13, 0, tzinfo=UTC)

    def test_six_hourly_aligned_to_midnight(self) -> None:
        cadence = Cadence(timedelta(hours=6))
        assert cadence.next_run(datetime(2026, 3, 2, 13, 5, tzinfo=UTC)) == datetime(2026, 3, 2, 18, 0, tzinfo=UTC)

    def test_daily_with_offset(self) -> None:
        cadence = Cadence(timedelta(days=1), timedelta(minutes=30))
        assert cadence.next_run(datetime(2026, 3, 2, 12, 0, tzinfo=UTC)) == datetime(2026, 3, 3, 0, 30, tzinfo=UTC)
        assert cadence.next_run(datetime(2026, 3, 2, 0, 10, tzinfo=UTC)) == datetime(2026, 3, 2, 0, 30, tzinfo=UTC)

    def test_weekly_fires_sunday_0100(self) -> None:
        cadence = Cadence(timedelta(weeks=1), timedelta(hours=1))
        next_run = cadence.next_run(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))
        assert next_run == datetime(2026, 3, 8, 1, 0, tzinfo=UTC)
        assert next_run.weekday() == 6

    def test_non_positive_interval_rejected(self) -> None:
        with pytest.raises(ValueError):
            Cadence(timedelta(0))


# ─── Scheduler ────────────────────────────────────────────────────────────────


class FakeSleep:
    """Records requested delays; returns at once for the first ``free`` calls, then blocks."""

    def __init__(self, free: int = 1_000) -> None:
        self.calls: list[float] = []
        self.free = free

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if len(self.calls) > self.free:
            await asyncio.Event().wait()


def _scheduler(config: Config, manager, store, sleep=None) -> Scheduler:
    registry = ConnectionRegistry()
    dispatcher = NotificationDispatcher(registry, encrypt=False)
    return Scheduler(
        config,
        manager,
        dispatcher,
        AuthFailureTracker(clock=manager.now),
        store,
        sleep=sleep or FakeSleep(),
    )


async def _drain(scheduler: Scheduler) -> None:
    await asyncio.gather(*list(scheduler._pending))


class TestJobTable:
    def test_default_jobs(self, config, manager, store) -> None:
        names = [job.name for job in _scheduler(config, manager, store).build_jobs()]
        assert names == [
            "rotate_keys",
            "cleanup_expired_keys",
            "purge_inactive_keys",
            "security_check",
            "broadcast_status",
            "backup_database",
        ]

    def test_backup_job_optional(self, config, manager, store) -> None:
        config.schedule.backup_enabled = False
        names = [job.name for job in _scheduler(config, manager, store).build_jobs()]
        assert "backup_database" not in names

    def test_cadences(self, config, manager, store) -> None:
        jobs = {job.name: job.cadence for job in _scheduler(config, manager, store).build_jobs()}
        assert jobs["rotate_keys"] == Cadence(timedelta(hours=1))
        assert jobs["cleanup_expired_keys"] == Cadence(timedelta(hours=6))
        assert jobs["purge_inactive_keys"] == Cadence(timedelta(days=1), timedelta(minutes=30))
        assert jobs["security_check"] == Cadence(timedelta(days=1), timedelta(hours=1))
        assert jobs["broadcast_status"] == Cadence(timedelta(days=1))
        assert jobs["backup_database"] == Cadence(timedelta(weeks=1), timedelta(hours=1))


class TestRotationTick:
    async def test_single_policy_has_no_follow_up(self, config, manager, store) -> None:
        scheduler = _scheduler(config, manager, store)
        result = await scheduler.rotation_tick()
        assert result.ok is True
        assert scheduler.pending_count == 0

    async def test_overlap_policy_retires_superseded_after_grace(
        self, config, overlap_manager, store, clock
    ) -> None:
        config.rotation.policy = "overlap"
        sleep = FakeSleep()
        scheduler = _scheduler(config, overlap_manager, store, sleep=sleep)

        first = await scheduler.rotation_tick()
        await _drain(scheduler)
        clock.advance(minutes=60)
        second = await scheduler.rotation_tick()
        await _drain(scheduler)

        assert sleep.calls == [600.0, 600.0]
        active = await store.list_active()
        assert [r.id for r in active] == [second.value.id]
        assert first.value.id != second.value.id

    async def test_failed_rotation_schedules_nothing(self, config, overlap_manager, store) -> None:
        scheduler = _scheduler(config, overlap_manager, store)
        overlap_manager.rotate = AsyncMock(side_effect=RuntimeError("boom"))
        result = await scheduler.rotation_tick()
        assert result.ok is False
        assert scheduler.pending_count == 0


class TestBootstrap:
    async def test_rotates_on_startup_even_with_valid_key(self, config, manager, store) -> None:
        existing = await manager.rotate()
        assert await _scheduler(config, manager, store).bootstrap() is True
        assert (await manager.current()).id != existing.id

    async def test_skips_startup_rotation_when_disabled(self, config, manager, store) -> None:
        config.rotation.rotate_on_startup = False
        existing = await manager.rotate()
        await _scheduler(config, manager, store).bootstrap()
        assert (await manager.current()).id == existing.id

    async def test_lazy_rotation_when_table_empty(self, config, manager, store) -> None:
        config.rotation.rotate_on_startup = False
        assert await _scheduler(config, manager, store).bootstrap() is True
        assert await store.count() == 1

    async def test_startup_rotation_does_not_schedule_follow_up(
        self, config, overlap_manager, store
    ) -> None:
        config.rotation.policy = "overlap"
        scheduler = _scheduler(config, overlap_manager, store)
        await scheduler.bootstrap()
        assert scheduler.pending_count == 0


class TestLifecycle:
    async def test_start_and_shutdown(self, config, manager, store) -> None:
        config.schedule.enabled = True
        scheduler = _scheduler(config, manager, store, sleep=FakeSleep(free=0))
        scheduler.start()
        assert "rotate_keys" in scheduler.job_names

        await asyncio.sleep(0)
        await scheduler.shutdown()
        assert scheduler.job_names == []

    async def test_disabled_schedule_starts_nothing(self, config, manager, store) -> None:
        config.schedule.enabled = False
        scheduler = _scheduler(config, manager, store)
        scheduler.start()
        assert scheduler.job_names == []

    async def test_shutdown_cancels_pending_follow_up(self, config, overlap_manager, store) -> None:
        config.rotation.policy = "overlap"
        scheduler = _scheduler(config, overlap_manager, store, sleep=FakeSleep(free=0))
        await scheduler.rotation_tick()
        assert scheduler.pending_count == 1

        await scheduler.shutdown()
        assert scheduler.pending_count == 0

    async def test_job_loop_survives_failures(self, config, manager, store) -> None:
        scheduler = _scheduler(config, manager, store, sleep=FakeSleep(free=3))
        run = AsyncMock(
            side_effect=[
                RuntimeError("unexpected"),
                TaskResult(name="flaky", ok=False, error="store down"),
                TaskResult(name="flaky", ok=True),
            ]
        )
        job = Job("flaky", Cadence(timedelta(minutes=1)), run)

        task = asyncio.create_task(scheduler._run_job(job))
        for _ in range(20):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert run.await_count == 3

    async def test_stalled_clock_never_repeats_a_boundary(self, config, manager, store) -> None:
        sleep = FakeSleep(free=3)
        scheduler = _scheduler(config, manager, store, sleep=sleep)
        run = AsyncMock(return_value=TaskResult(name="hourly", ok=True))
        job = Job("hourly", Cadence(timedelta(hours=1)), run)

        task = asyncio.create_task(scheduler._run_job(job))
        for _ in range(20):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # Clock stays at 12:00: each run targets the next hour, not 13:00 again.
        assert run.await_count == 3
        assert sleep.calls == [3600.0, 7200.0, 10800.0, 14400.0]

    async def test_early_wake_fires_each_boundary_once(self, config, manager, store, clock) -> None:
        boundaries: list[datetime] = []

        async def lagging_sleep(seconds: float) -> None:
            boundaries.append(clock.current + timedelta(seconds=seconds))
            if len(boundaries) > 3:
                await asyncio.Event().wait()
            clock.advance(seconds=seconds - 0.5)

        scheduler = _scheduler(config, manager, store, sleep=lagging_sleep)
        run = AsyncMock(return_value=TaskResult(name="hourly", ok=True))
        job = Job("hourly", Cadence(timedelta(hours=1)), run)

        task = asyncio.create_task(scheduler._run_job(job))
        for _ in range(20):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert run.await_count == 3
        assert boundaries == [
            datetime(2026, 3, 2, 13, 0, tzinfo=UTC),
            datetime(2026, 3, 2, 14, 0, tzinfo=UTC),
            datetime(2026, 3, 2, 15, 0, tzinfo=UTC),
            datetime(2026, 3, 2, 16, 0, tzinfo=UTC),
        ]
