"""Job Queue Worker.

Provides the worker pool:
- Priority-ordered fetching across the four queues
- Bounded concurrent execution
- Retry with backoff / dead-letter decisions
- Graceful shutdown
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Set, TypeVar

from benchmark_worker.core.errors import StoreError
from benchmark_worker.core.job_queue.backends import QueueStore
from benchmark_worker.core.job_queue.backoff import BackoffPolicy
from benchmark_worker.core.job_queue.core import (
    HandlerRegistry,
    HandlerResult,
    Job,
    JobStatus,
    Outcome,
)
from benchmark_worker.core.job_queue.metrics import WorkerMetrics
from benchmark_worker.core.job_queue.promoter import DelayedJobPromoter
from benchmark_worker.core.logging.structured import job_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class WorkerConfig:
    """Worker pool configuration."""
    pool_size: int = 4
    blocking_timeout_seconds: float = 5.0
    max_retries: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    promoter_tick_seconds: float = 1.0
    promoter_batch_limit: int = 100
    store_error_sleep_seconds: float = 1.0
    shutdown_timeout_seconds: float = 30.0


class WorkerPool:
    """Fixed set of worker loops plus the delayed-job promoter.

    There is no handler timeout: a hung handler keeps its slot until it
    returns.
    """

    def __init__(
        self,
        store: QueueStore,
        registry: HandlerRegistry,
        config: Optional[WorkerConfig] = None,
        metrics: Optional[WorkerMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._registry = registry
        self._config = config or WorkerConfig()
        self._metrics = metrics or WorkerMetrics()
        self._clock = clock

        self._running = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: Set[asyncio.Task] = set()
        self._promoter = DelayedJobPromoter(
            store,
            tick_interval_seconds=self._config.promoter_tick_seconds,
            batch_limit=self._config.promoter_batch_limit,
            metrics=self._metrics,
            clock=clock,
        )

    @property
    def metrics(self) -> WorkerMetrics:
        return self._metrics

    @property
    def config(self) -> WorkerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the pool and wait until stop() is called.

        Fails fast if the store cannot be reached.
        """
        if self._running:
            return

        await self._store.ping()

        self._running = True
        self._shutdown_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(self._config.pool_size)

        logger.info(
            f"Starting worker pool (pool_size={self._config.pool_size}, "
            f"max_retries={self._config.max_retries})"
        )

        for worker_id in range(self._config.pool_size):
            task = asyncio.create_task(self._worker_loop(worker_id, self._semaphore))
            self._tasks.add(task)
        self._tasks.add(asyncio.create_task(self._promoter.run()))

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the pool, letting running jobs finish.

        Jobs still running after the shutdown timeout are cancelled and pushed
        back onto their priority queue with their retry count unchanged.
        """
        if not self._running:
            return

        logger.info("Stopping worker pool...")
        self._running = False
        self._promoter.stop()

        if self._tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._tasks, return_exceptions=True),
                    timeout=self._config.shutdown_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("Shutdown timeout, cancelling tasks")
                for task in self._tasks:
                    task.cancel()
                # Interrupted jobs are re-enqueued while their tasks unwind.
                await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()

        if self._shutdown_event:
            self._shutdown_event.set()

        logger.info("Worker pool stopped")

    async def _worker_loop(self, worker_id: int, semaphore: asyncio.Semaphore) -> None:
        queue_names = self._store.priority_queue_names()

        while self._running:
            try:
                async with semaphore:
                    try:
                        job = await self._store.blocking_pop_any(
                            queue_names,
                            self._config.blocking_timeout_seconds,
                        )
                    except StoreError as e:
                        logger.error(f"Worker {worker_id} failed to fetch job: {e}")
                        await asyncio.sleep(self._config.store_error_sleep_seconds)
                        continue

                    if job is None:
                        continue

                    with job_context(job.id, worker_id):
                        await self.process_job(job, worker_id)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception(f"Worker {worker_id} loop error")
                await asyncio.sleep(self._config.store_error_sleep_seconds)

    async def process_job(self, job: Job, worker_id: int = 0) -> HandlerResult:
        """Execute one dequeued job and record its outcome in the store."""
        if job.status != JobStatus.QUEUED:
            logger.warning(f"Job {job.id} dequeued with status {job.status.value}")
            job.status = JobStatus.QUEUED
        job.mark_processing()
        self._metrics.job_started(job.job_type)
        logger.debug(f"Worker {worker_id} processing job {job.id} ({job.job_type})")

        start = time.perf_counter()
        try:
            result = await self._registry.execute(job.job_type, job.payload)
        except asyncio.CancelledError:
            await self._requeue_interrupted(job)
            raise
        finally:
            duration = time.perf_counter() - start
            self._metrics.job_finished(job.job_type, duration)

        if result.ok:
            job.mark_completed()
            self._metrics.job_succeeded(job.job_type)
            logger.info(
                f"Job {job.id} completed",
                extra={"job_type": job.job_type, "duration_ms": round(duration * 1000, 2)},
            )
            return result

        reason = result.reason or "unknown error"
        logger.error(f"Job {job.id} failed: {reason}")

        if result.outcome == Outcome.RETRYABLE and job.can_retry(self._config.max_retries):
            job.mark_retry()
            delay = self._config.backoff.delay_for(job.retry_count)
            ready_at = self._clock() + delay
            await self._with_store_retry(
                "schedule", job, lambda: self._store.schedule(job, ready_at)
            )
            self._metrics.job_retried(job.job_type)
            logger.warning(
                f"Retrying job {job.id} in {delay:.1f}s "
                f"(retry {job.retry_count}/{self._config.max_retries})"
            )
        else:
            fail_reason = "fatal" if result.outcome == Outcome.FATAL else "exhausted"
            job.mark_failed(reason)
            await self._with_store_retry(
                "append_dead_letter", job, lambda: self._store.append_dead_letter(job)
            )
            self._metrics.job_failed(job.job_type, fail_reason)
            logger.warning(f"Job {job.id} moved to dead letter queue ({fail_reason})")

        return result

    async def _requeue_interrupted(self, job: Job) -> None:
        """Put a job whose handler was cancelled back on its priority queue."""
        job.mark_interrupted()
        try:
            await self._store.push(self._store.queue_name(job.priority), job)
            logger.warning(f"Job {job.id} interrupted by shutdown, re-enqueued")
        except StoreError as e:
            logger.error(f"Could not re-enqueue interrupted job {job.id}: {e}")
            logger.error(f"Unrecorded job document: {job.to_json()}")

    async def _with_store_retry(
        self,
        operation: str,
        job: Job,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Retry a store write for an in-flight job until it lands.

        Gives up only once the pool is stopping, after logging the job
        document so it can be restored by hand.
        """
        while True:
            try:
                return await call()
            except StoreError as e:
                logger.error(f"Store {operation} failed for job {job.id}: {e}")
                if not self._running:
                    logger.error(f"Unrecorded job document: {job.to_json()}")
                    raise
                await asyncio.sleep(self._config.store_error_sleep_seconds)


def setup_signal_handlers(pool: WorkerPool, extra: Optional[List[Callable[[], None]]] = None) -> None:
    """Stop the pool on SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        for callback in extra or []:
            callback()
        asyncio.create_task(pool.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass
