"""Tests for cron matching and the recurring scheduler."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from benchmark_worker.core.errors import StoreError
from benchmark_worker.core.job_queue import InMemoryQueueStore, JobPriority, JobProducer
from benchmark_worker.core.tasks import (
    CronSchedule,
    RecurringScheduler,
    ScheduledJob,
    default_scheduled_jobs,
)


def _dt(year=2024, month=1, day=7, hour=2, minute=0, second=0):
    # 2024-01-07 is a Sunday
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestCronSchedule:
    def test_every_minute(self):
        assert CronSchedule.every_minute().matches(_dt(minute=37))

    def test_daily(self):
        schedule = CronSchedule.daily(2, 0)
        assert schedule.matches(_dt(hour=2, minute=0))
        assert not schedule.matches(_dt(hour=2, minute=1))
        assert not schedule.matches(_dt(hour=3, minute=0))

    def test_weekly_uses_sunday_as_zero(self):
        schedule = CronSchedule.weekly(0, 4, 0)
        assert schedule.matches(_dt(day=7, hour=4))
        assert not schedule.matches(_dt(day=8, hour=4))

    def test_steps_ranges_and_lists(self):
        schedule = CronSchedule.parse("*/15 9-17 * * 1,3,5")
        # Monday 2024-01-08
        assert schedule.matches(_dt(day=8, hour=9, minute=45))
        assert not schedule.matches(_dt(day=8, hour=18, minute=0))
        assert not schedule.matches(_dt(day=8, hour=10, minute=5))
        # Tuesday
        assert not schedule.matches(_dt(day=9, hour=10, minute=0))

    def test_list_of_ranges(self):
        schedule = CronSchedule(hour="1-2,22-23")
        assert schedule.matches(_dt(hour=22))
        assert not schedule.matches(_dt(hour=12))

    def test_parse_rejects_wrong_field_count(self):
        with pytest.raises(ValueError):
            CronSchedule.parse("* * *")

    @pytest.mark.parametrize(
        "expr",
        [
            "abc * * * *",
            "60 * * * *",
            "* 24 * * *",
            "* * 0 * *",
            "* * * 13 *",
            "* * * * 7",
            "*/0 * * * *",
            "5-1 * * * *",
            "1,,2 * * * *",
            "*/x * * * *",
        ],
    )
    def test_parse_rejects_malformed_fields(self, expr):
        with pytest.raises(ValueError):
            CronSchedule.parse(expr)

    def test_direct_construction_is_validated(self):
        with pytest.raises(ValueError):
            CronSchedule(minute="every")

    def test_hourly(self):
        assert CronSchedule.hourly(30).matches(_dt(hour=13, minute=30))


class TestDefaultJobs:
    def test_default_jobs_are_low_priority_cleanups(self):
        jobs = default_scheduled_jobs()
        assert {j.name for j in jobs} == {
            "cleanup_expired_sessions",
            "cleanup_temp_files",
            "cleanup_old_submissions",
        }
        assert all(j.priority == JobPriority.LOW for j in jobs)
        assert all(j.job_type == "cleanup_expired_data" for j in jobs)


class TestRecurringScheduler:
    @pytest.mark.asyncio
    async def test_enqueues_matching_jobs_once_per_minute(self):
        store = InMemoryQueueStore()
        clock = _Clock(_dt(hour=2, minute=0, second=5))
        scheduler = RecurringScheduler(JobProducer(store), clock=clock)

        assert await scheduler.tick() == ["cleanup_expired_sessions"]
        clock.now = _dt(hour=2, minute=0, second=40)
        assert await scheduler.tick() == []

        clock.now = _dt(hour=2, minute=1)
        assert await scheduler.tick() == []
        assert await store.queue_length(store.queue_name(JobPriority.LOW)) == 1

    @pytest.mark.asyncio
    async def test_sunday_four_am_runs_submission_cleanup(self):
        store = InMemoryQueueStore()
        scheduler = RecurringScheduler(JobProducer(store), clock=_Clock(_dt(hour=4)))

        assert await scheduler.tick() == ["cleanup_old_submissions"]
        job = await store.blocking_pop_any(store.priority_queue_names(), 0)
        assert job.payload == {"cleanup_type": "old_submissions", "older_than_days": 90}

    @pytest.mark.asyncio
    async def test_every_minute_job_fires_each_minute(self):
        store = InMemoryQueueStore()
        clock = _Clock(_dt(hour=12, minute=0))
        job = ScheduledJob("heartbeat", CronSchedule.every_minute(), "heartbeat")
        scheduler = RecurringScheduler(JobProducer(store), jobs=[job], clock=clock)

        for minute in range(3):
            clock.now = _dt(hour=12, minute=minute)
            assert await scheduler.tick() == ["heartbeat"]

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_logged_not_raised(self):
        producer = JobProducer(InMemoryQueueStore())
        producer.enqueue = AsyncMock(side_effect=StoreError("push", "down"))
        job = ScheduledJob("heartbeat", CronSchedule.every_minute(), "heartbeat")
        scheduler = RecurringScheduler(producer, jobs=[job], clock=_Clock(_dt()))

        assert await scheduler.tick() == []
        producer.enqueue.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_minute_skipped_between_ticks_still_fires(self):
        store = InMemoryQueueStore()
        clock = _Clock(datetime(2024, 1, 7, 2, 0, 59, 900000, tzinfo=timezone.utc))
        job = ScheduledJob("late_cleanup", CronSchedule.daily(2, 1), "cleanup")
        scheduler = RecurringScheduler(JobProducer(store), jobs=[job], clock=clock)

        assert await scheduler.tick() == []
        clock.now = datetime(2024, 1, 7, 2, 2, 0, 100000, tzinfo=timezone.utc)
        assert await scheduler.tick() == ["late_cleanup"]
        assert await scheduler.tick() == []
        assert await store.queue_length(store.queue_name(JobPriority.LOW)) == 1

    @pytest.mark.asyncio
    async def test_catch_up_fires_once_per_missed_minute(self):
        store = InMemoryQueueStore()
        clock = _Clock(_dt(hour=12, minute=0))
        job = ScheduledJob("heartbeat", CronSchedule.every_minute(), "heartbeat")
        scheduler = RecurringScheduler(JobProducer(store), jobs=[job], clock=clock)

        await scheduler.tick()
        clock.now = _dt(hour=12, minute=3, second=30)
        assert await scheduler.tick() == ["heartbeat"] * 3

    @pytest.mark.asyncio
    async def test_failed_enqueue_is_retried_next_tick(self):
        producer = JobProducer(InMemoryQueueStore())
        real_enqueue = producer.enqueue
        producer.enqueue = AsyncMock(side_effect=[StoreError("push", "down"), None])
        clock = _Clock(_dt(hour=2, minute=0))
        job = ScheduledJob("nightly", CronSchedule.daily(2, 0), "cleanup")
        scheduler = RecurringScheduler(producer, jobs=[job], clock=clock)

        assert await scheduler.tick() == []
        clock.now = _dt(hour=2, minute=1)
        assert await scheduler.tick() == ["nightly"]
        assert producer.enqueue.await_count == 2

        producer.enqueue = real_enqueue
        clock.now = _dt(hour=2, minute=2)
        assert await scheduler.tick() == []

    def test_add_job(self):
        scheduler = RecurringScheduler(JobProducer(InMemoryQueueStore()), jobs=[])
        scheduler.add_job(ScheduledJob("x", CronSchedule.hourly(), "x"))
        assert [j.name for j in scheduler.jobs] == ["x"]
