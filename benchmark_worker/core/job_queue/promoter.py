"""Delayed-job promoter.

Moves jobs whose ready time has passed from the delayed set into the
priority queue matching their priority. This is the only way a retried or
explicitly delayed job reaches a priority queue.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from benchmark_worker.core.errors import StoreError
from benchmark_worker.core.job_queue.backends import QueueStore
from benchmark_worker.core.job_queue.core import Job
from benchmark_worker.core.job_queue.metrics import WorkerMetrics

logger = logging.getLogger(__name__)


class DelayedJobPromoter:
    def __init__(
        self,
        store: QueueStore,
        tick_interval_seconds: float = 1.0,
        batch_limit: int = 100,
        metrics: Optional[WorkerMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._tick_interval = tick_interval_seconds
        self._batch_limit = batch_limit
        self._metrics = metrics or WorkerMetrics()
        self._clock = clock
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def tick(self) -> int:
        """Promote one batch of due jobs; returns how many were moved."""
        now = self._clock()
        jobs = await self._store.pop_due(now, self._batch_limit)
        promoted = 0
        for index, job in enumerate(jobs):
            try:
                await self._push(job)
            except (StoreError, asyncio.CancelledError):
                # The rest of the batch is out of the delayed set already.
                await self._return_to_delayed(jobs[index:], now)
                self._metrics.jobs_promoted(promoted)
                raise
            promoted += 1
            logger.debug(f"Promoted delayed job {job.id} to {job.priority.value}")
        self._metrics.jobs_promoted(promoted)
        return promoted

    async def _push(self, job: Job) -> None:
        """Push a popped job, retrying while the promoter is running."""
        while True:
            try:
                await self._store.push(self._store.queue_name(job.priority), job)
                return
            except StoreError as e:
                logger.error(f"Failed to promote job {job.id}: {e}")
                if not self._running:
                    raise
                await asyncio.sleep(self._tick_interval)

    async def _return_to_delayed(self, jobs: List[Job], ready_at: float) -> None:
        for job in jobs:
            try:
                await self._store.schedule(job, ready_at)
                logger.warning(f"Returned job {job.id} to the delayed set")
            except StoreError as e:
                logger.error(f"Could not return job {job.id} to the delayed set: {e}")
                logger.error(f"Unpromoted job document: {job.to_json()}")

    async def run(self) -> None:
        """Tick until stop() is called."""
        self._running = True
        self._stop_event = asyncio.Event()
        logger.info(
            f"Delayed job promoter started (tick={self._tick_interval}s, "
            f"batch={self._batch_limit})"
        )
        try:
            while self._running:
                try:
                    promoted = await self.tick()
                except StoreError as e:
                    logger.error(f"Delayed job promoter tick failed: {e}")
                    promoted = 0
                # A full batch means more may be due; go again without sleeping.
                if promoted >= self._batch_limit:
                    continue
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self._tick_interval
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("Delayed job promoter stopped")

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
