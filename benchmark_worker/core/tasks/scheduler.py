"""Recurring job scheduler.

Enqueues maintenance jobs on cron-like schedules through the job producer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from benchmark_worker.core.errors import JobQueueError
from benchmark_worker.core.job_queue.core import JobPriority
from benchmark_worker.core.job_queue.producer import JobProducer

logger = logging.getLogger(__name__)

CLEANUP_EXPIRED_DATA = "cleanup_expired_data"

# Longest gap a single tick catches up on
MAX_CATCH_UP = timedelta(hours=24)

_FIELD_RANGES = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
)


def _valid_field(pattern: str, low: int, high: int) -> bool:
    for part in pattern.split(","):
        if part == "*":
            continue
        if part.startswith("*/"):
            step = part[2:]
            if not step.isdigit() or int(step) == 0:
                return False
            continue
        if "-" in part:
            start, _, end = part.partition("-")
            if not (start.isdigit() and end.isdigit()):
                return False
            if not low <= int(start) <= int(end) <= high:
                return False
            continue
        if not part.isdigit() or not low <= int(part) <= high:
            return False
    return True


@dataclass
class CronSchedule:
    """Cron-like schedule definition.

    Supports: minute, hour, day_of_month, month, day_of_week (0 = Sunday)
    """

    minute: str = "*"
    hour: str = "*"
    day_of_month: str = "*"
    month: str = "*"
    day_of_week: str = "*"

    def __post_init__(self) -> None:
        for name, low, high in _FIELD_RANGES:
            pattern = getattr(self, name)
            if not isinstance(pattern, str) or not _valid_field(pattern, low, high):
                raise ValueError(f"Invalid cron {name} field: {pattern!r}")

    def matches(self, dt: datetime) -> bool:
        """Check if datetime matches the schedule."""
        if not self._matches_field(self.minute, dt.minute):
            return False
        if not self._matches_field(self.hour, dt.hour):
            return False
        if not self._matches_field(self.day_of_month, dt.day):
            return False
        if not self._matches_field(self.month, dt.month):
            return False
        if not self._matches_field(self.day_of_week, (dt.weekday() + 1) % 7):
            return False
        return True

    def _matches_field(self, pattern: str, value: int) -> bool:
        """Check if a value matches a cron pattern."""
        if pattern == "*":
            return True

        # Lists like "1,3,5" (elements may be ranges)
        if "," in pattern:
            return any(self._matches_field(part, value) for part in pattern.split(","))

        # Steps like "*/5"
        if pattern.startswith("*/"):
            step = int(pattern[2:])
            return step > 0 and value % step == 0

        # Ranges like "1-5"
        if "-" in pattern:
            start, end = pattern.split("-", 1)
            return int(start) <= value <= int(end)

        return int(pattern) == value

    @classmethod
    def parse(cls, expr: str) -> "CronSchedule":
        """Parse "minute hour day month day_of_week".

        Raises ValueError on a wrong field count or a malformed field.
        """
        parts = expr.split()
        if len(parts) != 5:
            raise ValueError(
                f"Invalid cron expression {expr!r}, expected 5 fields"
            )
        return cls(*parts)

    @classmethod
    def every_minute(cls) -> "CronSchedule":
        return cls()

    @classmethod
    def hourly(cls, minute: int = 0) -> "CronSchedule":
        return cls(minute=str(minute))

    @classmethod
    def daily(cls, hour: int = 0, minute: int = 0) -> "CronSchedule":
        return cls(minute=str(minute), hour=str(hour))

    @classmethod
    def weekly(cls, day_of_week: int = 0, hour: int = 0, minute: int = 0) -> "CronSchedule":
        return cls(minute=str(minute), hour=str(hour), day_of_week=str(day_of_week))


@dataclass
class ScheduledJob:
    """A job type enqueued whenever its schedule matches."""

    name: str
    schedule: CronSchedule
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: JobPriority = JobPriority.LOW


def default_scheduled_jobs() -> List[ScheduledJob]:
    return [
        ScheduledJob(
            "cleanup_expired_sessions",
            CronSchedule.daily(2, 0),
            CLEANUP_EXPIRED_DATA,
            {"cleanup_type": "expired_sessions", "older_than_days": 7},
        ),
        ScheduledJob(
            "cleanup_temp_files",
            CronSchedule.daily(3, 0),
            CLEANUP_EXPIRED_DATA,
            {"cleanup_type": "temp_files", "older_than_days": 1},
        ),
        ScheduledJob(
            "cleanup_old_submissions",
            CronSchedule.weekly(0, 4, 0),
            CLEANUP_EXPIRED_DATA,
            {"cleanup_type": "old_submissions", "older_than_days": 90},
        ),
    ]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecurringScheduler:
    """Enqueues each scheduled job once per matching minute."""

    def __init__(
        self,
        producer: JobProducer,
        jobs: Optional[List[ScheduledJob]] = None,
        tick_interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._producer = producer
        self._jobs = list(default_scheduled_jobs() if jobs is None else jobs)
        self._tick_interval = tick_interval_seconds
        self._clock = clock
        self._last_check: Optional[datetime] = None
        self._retry: List[ScheduledJob] = []
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs)

    def add_job(self, job: ScheduledJob) -> None:
        self._jobs.append(job)

    def _due_minutes(self, now: datetime) -> List[datetime]:
        """Minutes after the last check up to and including the current one."""
        current = now.replace(second=0, microsecond=0)
        if self._last_check is None:
            return [current]

        cursor = self._last_check.replace(second=0, microsecond=0) + timedelta(minutes=1)
        if current - cursor > MAX_CATCH_UP:
            logger.warning(
                f"Scheduler fell behind by {current - cursor}, "
                f"only catching up on the last {MAX_CATCH_UP}"
            )
            cursor = current - MAX_CATCH_UP

        minutes = []
        while cursor <= current:
            minutes.append(cursor)
            cursor += timedelta(minutes=1)
        return minutes

    async def _enqueue(self, scheduled: ScheduledJob) -> bool:
        try:
            await self._producer.enqueue(
                scheduled.job_type, scheduled.payload, scheduled.priority
            )
        except JobQueueError as e:
            logger.error(f"Failed to enqueue scheduled job '{scheduled.name}': {e}")
            return False
        logger.info(f"Enqueued scheduled job '{scheduled.name}'")
        return True

    async def tick(self) -> List[str]:
        """Enqueue jobs matching any minute since the last check; returns their names.

        Each job runs at most once per matching minute. Runs whose enqueue
        failed are retried on the next tick.
        """
        now = self._clock()
        enqueued = []

        retry, self._retry = self._retry, []
        for scheduled in retry:
            if await self._enqueue(scheduled):
                enqueued.append(scheduled.name)
            else:
                self._retry.append(scheduled)

        for minute in self._due_minutes(now):
            for scheduled in self._jobs:
                if not scheduled.schedule.matches(minute):
                    continue
                if await self._enqueue(scheduled):
                    enqueued.append(scheduled.name)
                else:
                    self._retry.append(scheduled)

        self._last_check = now
        return enqueued

    async def run(self) -> None:
        self._running = True
        self._stop_event = asyncio.Event()
        self._last_check = self._clock()
        logger.info(
            f"Recurring scheduler started ({len(self._jobs)} jobs, "
            f"tick={self._tick_interval}s)"
        )
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._tick_interval)
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break
            await self.tick()
        logger.info("Recurring scheduler stopped")

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
