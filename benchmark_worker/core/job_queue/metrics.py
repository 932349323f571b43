"""Prometheus metrics for the job queue.

All metric objects are defined at import time. `WorkerMetrics` updates them and
keeps a small in-process window for the periodic metrics log line.
"""

from __future__ import annotations

import statistics
import threading
from dataclasses import dataclass
from typing import List, Optional

from prometheus_client import Counter, Gauge, Histogram

jobs_processed_total = Counter(
    "job_queue_jobs_processed_total",
    "Jobs dequeued and executed",
    ["job_type"],
)
jobs_succeeded_total = Counter(
    "job_queue_jobs_succeeded_total",
    "Jobs completed successfully",
    ["job_type"],
)
jobs_failed_total = Counter(
    "job_queue_jobs_failed_total",
    "Jobs moved to the dead-letter list",
    ["job_type", "reason"],  # reason: fatal | exhausted
)
jobs_retried_total = Counter(
    "job_queue_jobs_retried_total",
    "Jobs re-scheduled after a retryable failure",
    ["job_type"],
)
job_duration_seconds = Histogram(
    "job_queue_job_duration_seconds",
    "Handler execution time",
    ["job_type"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
)
entries_dropped_total = Counter(
    "job_queue_entries_dropped_total",
    "Stored entries dropped because they could not be parsed",
    ["source"],  # source: queue | delayed | dead_letter
)
jobs_promoted_total = Counter(
    "job_queue_promoted_total",
    "Delayed jobs moved into a priority queue",
)
store_errors_total = Counter(
    "job_queue_store_errors_total",
    "Queue store operation failures",
    ["operation"],
)
queue_depth = Gauge(
    "job_queue_depth",
    "Entries currently held per queue",
    ["queue"],
)
jobs_active = Gauge(
    "job_queue_jobs_active",
    "Jobs currently executing",
)

_MAX_DURATIONS = 1000


@dataclass
class MetricsSnapshot:
    jobs_processed: int
    jobs_succeeded: int
    jobs_failed: int
    jobs_retried: int
    success_rate: float
    failure_rate: float
    average_duration: Optional[float]
    median_duration: Optional[float]
    p95_duration: Optional[float]
    p99_duration: Optional[float]

    def as_log_fields(self) -> dict:
        def ms(value: Optional[float]) -> Optional[float]:
            return round(value * 1000, 2) if value is not None else None

        return {
            "jobs_processed": self.jobs_processed,
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_failed": self.jobs_failed,
            "jobs_retried": self.jobs_retried,
            "success_rate": round(self.success_rate, 4),
            "avg_duration_ms": ms(self.average_duration),
            "p95_duration_ms": ms(self.p95_duration),
        }


def _percentile(sorted_values: List[float], fraction: float) -> float:
    index = int(len(sorted_values) * fraction)
    return sorted_values[min(index, len(sorted_values) - 1)]


class WorkerMetrics:
    """Counters and timers updated by the consumer."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._retried = 0
        self._durations: List[float] = []

    def job_started(self, job_type: str) -> None:
        jobs_processed_total.labels(job_type=job_type).inc()
        jobs_active.inc()
        with self._lock:
            self._processed += 1

    def job_finished(self, job_type: str, duration_seconds: float) -> None:
        jobs_active.dec()
        job_duration_seconds.labels(job_type=job_type).observe(duration_seconds)
        with self._lock:
            self._durations.append(duration_seconds)
            if len(self._durations) > _MAX_DURATIONS:
                del self._durations[: _MAX_DURATIONS // 2]

    def job_succeeded(self, job_type: str) -> None:
        jobs_succeeded_total.labels(job_type=job_type).inc()
        with self._lock:
            self._succeeded += 1

    def job_retried(self, job_type: str) -> None:
        jobs_retried_total.labels(job_type=job_type).inc()
        with self._lock:
            self._retried += 1

    def job_failed(self, job_type: str, reason: str) -> None:
        jobs_failed_total.labels(job_type=job_type, reason=reason).inc()
        with self._lock:
            self._failed += 1

    def jobs_promoted(self, count: int) -> None:
        if count:
            jobs_promoted_total.inc(count)

    def set_queue_depth(self, queue: str, depth: int) -> None:
        queue_depth.labels(queue=queue).set(depth)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            processed = self._processed
            durations = sorted(self._durations)
            snap = MetricsSnapshot(
                jobs_processed=processed,
                jobs_succeeded=self._succeeded,
                jobs_failed=self._failed,
                jobs_retried=self._retried,
                success_rate=self._succeeded / processed if processed else 0.0,
                failure_rate=self._failed / processed if processed else 0.0,
                average_duration=statistics.fmean(durations) if durations else None,
                median_duration=durations[len(durations) // 2] if durations else None,
                p95_duration=_percentile(durations, 0.95) if durations else None,
                p99_duration=_percentile(durations, 0.99) if durations else None,
            )
        return snap

    def reset(self) -> None:
        with self._lock:
            self._processed = 0
            self._succeeded = 0
            self._failed = 0
            self._retried = 0
            self._durations.clear()
