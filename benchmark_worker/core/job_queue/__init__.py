"""Job Queue Module.

Provides the background job scheduling subsystem:
- Priority-based job queues
- Delayed jobs and retry with backoff
- Dead letter handling
- Worker pool management
"""

from benchmark_worker.core.job_queue.core import (
    JobStatus,
    JobPriority,
    Job,
    create_job,
    Outcome,
    HandlerResult,
    JobHandler,
    FunctionHandler,
    HandlerRegistry,
)
from benchmark_worker.core.job_queue.backoff import BackoffPolicy
from benchmark_worker.core.job_queue.backends import (
    QueueStore,
    InMemoryQueueStore,
    RedisQueueStore,
)
from benchmark_worker.core.job_queue.producer import JobProducer
from benchmark_worker.core.job_queue.promoter import DelayedJobPromoter
from benchmark_worker.core.job_queue.dead_letter import DeadLetterAdmin
from benchmark_worker.core.job_queue.metrics import MetricsSnapshot, WorkerMetrics
from benchmark_worker.core.job_queue.worker import (
    WorkerConfig,
    WorkerPool,
    setup_signal_handlers,
)

__all__ = [
    # Core
    "JobStatus",
    "JobPriority",
    "Job",
    "create_job",
    "Outcome",
    "HandlerResult",
    "JobHandler",
    "FunctionHandler",
    "HandlerRegistry",
    "BackoffPolicy",
    # Backends
    "QueueStore",
    "InMemoryQueueStore",
    "RedisQueueStore",
    # Producer / admin
    "JobProducer",
    "DelayedJobPromoter",
    "DeadLetterAdmin",
    # Worker
    "MetricsSnapshot",
    "WorkerMetrics",
    "WorkerConfig",
    "WorkerPool",
    "setup_signal_handlers",
]
