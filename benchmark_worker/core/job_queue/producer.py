"""Job producer: the enqueue side of the queue."""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from benchmark_worker.core.job_queue.backends import QueueStore
from benchmark_worker.core.job_queue.core import (
    Job,
    JobPriority,
    create_job,
    utcnow,
)

logger = logging.getLogger(__name__)

Delay = Union[float, timedelta]


def _delay_seconds(delay: Delay) -> float:
    if isinstance(delay, timedelta):
        return delay.total_seconds()
    return float(delay)


class JobProducer:
    """Enqueue jobs onto the priority queues or the delayed set."""

    def __init__(self, store: QueueStore):
        self._store = store

    @property
    def store(self) -> QueueStore:
        return self._store

    async def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: JobPriority = JobPriority.NORMAL,
        delay: Optional[Delay] = None,
    ) -> Job:
        """Create a job and make it available to workers.

        Without `delay` the job goes straight to its priority queue; with one
        it waits in the delayed set until the promoter moves it.
        """
        job = create_job(job_type, payload, priority)

        if delay is None:
            await self._store.push(self._store.queue_name(priority), job)
            logger.debug(f"Enqueued job {job.id} ({job_type}, {priority.value})")
            return job

        seconds = max(0.0, _delay_seconds(delay))
        job.scheduled_at = utcnow() + timedelta(seconds=seconds)
        await self._store.schedule(job, time.time() + seconds)
        logger.debug(
            f"Scheduled job {job.id} ({job_type}, {priority.value}) in {seconds:.1f}s"
        )
        return job

    async def enqueue_batch(
        self,
        jobs: Iterable[Tuple[str, Dict[str, Any], JobPriority]],
    ) -> List[Job]:
        created = []
        for job_type, payload, priority in jobs:
            created.append(await self.enqueue(job_type, payload, priority))
        logger.info(f"Batch of {len(created)} jobs enqueued")
        return created

    async def queue_size(self, priority: JobPriority) -> int:
        return await self._store.queue_length(self._store.queue_name(priority))

    async def total_queue_size(self) -> int:
        total = 0
        for priority in JobPriority.polling_order():
            total += await self.queue_size(priority)
        return total

    async def delayed_queue_size(self) -> int:
        return await self._store.delayed_length()

    async def clear_queue(self, priority: JobPriority) -> None:
        await self._store.clear(self._store.queue_name(priority))
        logger.info(f"Queue cleared: {priority.value}")
