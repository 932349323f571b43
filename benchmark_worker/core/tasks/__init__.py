"""Recurring maintenance jobs."""

from benchmark_worker.core.tasks.scheduler import (
    CronSchedule,
    RecurringScheduler,
    ScheduledJob,
    default_scheduled_jobs,
)

__all__ = [
    "CronSchedule",
    "RecurringScheduler",
    "ScheduledJob",
    "default_scheduled_jobs",
]
