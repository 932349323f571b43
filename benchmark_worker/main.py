"""Worker service runner.

Wires settings, the Redis queue store, the worker pool, the recurring
scheduler and the metrics exporter into one long-running process.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import List, Optional

from prometheus_client import start_http_server

from benchmark_worker.core.config import Settings
from benchmark_worker.core.errors import StoreError
from benchmark_worker.core.job_queue.backends import QueueStore, RedisQueueStore
from benchmark_worker.core.job_queue.core import HandlerRegistry, JobPriority
from benchmark_worker.core.job_queue.metrics import WorkerMetrics
from benchmark_worker.core.job_queue.producer import JobProducer
from benchmark_worker.core.job_queue.worker import WorkerPool, setup_signal_handlers
from benchmark_worker.core.tasks.scheduler import RecurringScheduler

logger = logging.getLogger(__name__)


def load_registry(target: str) -> HandlerRegistry:
    """Resolve "package.module:attr" to a HandlerRegistry.

    The attribute may be a registry or a zero-argument factory returning one.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Handler target must look like 'module:attr', got {target!r}")

    module = importlib.import_module(module_name)
    try:
        obj = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module {module_name!r} has no attribute {attr!r}") from None

    if not isinstance(obj, HandlerRegistry) and callable(obj):
        obj = obj()
    if not isinstance(obj, HandlerRegistry):
        raise ValueError(f"{target} is not a HandlerRegistry")
    return obj


class MetricsReporter:
    """Logs a metrics snapshot and refreshes queue depth gauges periodically."""

    def __init__(self, metrics: WorkerMetrics, store: QueueStore, interval_seconds: float = 60.0):
        self._metrics = metrics
        self._store = store
        self._interval = interval_seconds
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

    async def report(self) -> None:
        try:
            for priority in JobPriority.polling_order():
                self._metrics.set_queue_depth(
                    priority.value,
                    await self._store.queue_length(self._store.queue_name(priority)),
                )
            self._metrics.set_queue_depth("delayed", await self._store.delayed_length())
            self._metrics.set_queue_depth("dead_letter", await self._store.dead_letter_length())
        except StoreError as e:
            logger.warning(f"Could not refresh queue depths: {e}")

        logger.info("Worker metrics", extra=self._metrics.snapshot().as_log_fields())

    async def run(self) -> None:
        self._running = True
        self._stop_event = asyncio.Event()
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break
            await self.report()

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()


async def run_service(
    settings: Settings,
    registry: HandlerRegistry,
    store: Optional[QueueStore] = None,
    scheduler_enabled: Optional[bool] = None,
) -> None:
    """Run the worker until SIGINT/SIGTERM.

    Raises StoreError when the queue store is unreachable at startup.
    """
    if store is None:
        store = RedisQueueStore.from_url(settings.REDIS_URL, key_prefix=settings.WORKER_KEY_PREFIX)
    if scheduler_enabled is None:
        scheduler_enabled = settings.WORKER_SCHEDULER_ENABLED

    try:
        await store.ping()
    except StoreError:
        logger.error(f"Queue store unreachable at {settings.REDIS_URL}")
        await store.close()
        raise

    pool = WorkerPool(store, registry, settings.worker_config())
    logger.info(
        f"Registered handlers: {', '.join(sorted(registry.handlers)) or '(none)'}"
    )

    if settings.WORKER_METRICS_PORT > 0:
        start_http_server(settings.WORKER_METRICS_PORT)
        logger.info(f"Prometheus metrics exported on :{settings.WORKER_METRICS_PORT}")

    background: List[asyncio.Task] = []
    stoppers = []

    if scheduler_enabled:
        scheduler = RecurringScheduler(
            JobProducer(store),
            tick_interval_seconds=settings.WORKER_SCHEDULER_TICK_SECONDS,
        )
        background.append(asyncio.create_task(scheduler.run()))
        stoppers.append(scheduler.stop)

    reporter = MetricsReporter(
        pool.metrics, store, settings.WORKER_METRICS_LOG_INTERVAL_SECONDS
    )
    background.append(asyncio.create_task(reporter.run()))
    stoppers.append(reporter.stop)

    setup_signal_handlers(pool, extra=stoppers)

    try:
        await pool.start()
    finally:
        for stop in stoppers:
            stop()
        await asyncio.gather(*background, return_exceptions=True)
        logger.info("Final worker metrics", extra=pool.metrics.snapshot().as_log_fields())
        try:
            await store.close()
        except StoreError as e:
            logger.warning(f"Error closing queue store: {e}")
