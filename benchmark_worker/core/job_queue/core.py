"""Job Queue Core.

Provides job queue primitives:
- Job definition and state machine
- Priority tiers and their queue names
- Handler execution contract
"""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from benchmark_worker.core.errors import (
    FatalJobError,
    InvalidTransitionError,
    JobDeserializationError,
)

SCHEMA_VERSION = "job/v1"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Status of a job."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(str, Enum):
    """Job priority tiers."""
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    def queue_name(self, prefix: str) -> str:
        return f"{prefix}:jobs:{self.value}"

    @classmethod
    def polling_order(cls) -> List["JobPriority"]:
        """Tiers in the order workers check them."""
        return [cls.CRITICAL, cls.HIGH, cls.NORMAL, cls.LOW]


STATE_MACHINE = {
    JobStatus.QUEUED: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.QUEUED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: {JobStatus.QUEUED},  # replay only
}


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class Job:
    """A unit of deferred work."""
    job_type: str
    payload: Dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.QUEUED
    retry_count: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_retry(self, max_retries: int) -> bool:
        return self.retry_count < max_retries

    def _transition(self, new_status: JobStatus) -> None:
        allowed = STATE_MACHINE.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Illegal transition for job {self.id}: "
                f"{self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        self.updated_at = utcnow()

    def mark_processing(self) -> None:
        self._transition(JobStatus.PROCESSING)
        self.started_at = self.updated_at

    def mark_completed(self) -> None:
        self._transition(JobStatus.COMPLETED)
        self.completed_at = self.updated_at

    def mark_retry(self) -> None:
        self._transition(JobStatus.QUEUED)
        self.retry_count += 1

    def mark_interrupted(self) -> None:
        """Return an in-flight job to the queue without using a retry."""
        self._transition(JobStatus.QUEUED)
        self.started_at = None

    def mark_failed(self, error: str) -> None:
        self._transition(JobStatus.FAILED)
        self.completed_at = self.updated_at
        self.error = error or "unknown error"

    def reset_for_replay(self) -> None:
        self._transition(JobStatus.QUEUED)
        self.retry_count = 0
        self.error = None
        self.scheduled_at = None
        self.started_at = None
        self.completed_at = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": SCHEMA_VERSION,
            "id": self.id,
            "job_type": self.job_type,
            "payload": self.payload,
            "priority": self.priority.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        if not isinstance(data, dict):
            raise JobDeserializationError("Job document is not an object")
        if data.get("schema") != SCHEMA_VERSION:
            raise JobDeserializationError(
                f"Unsupported job schema: {data.get('schema')!r}"
            )
        try:
            payload = data.get("payload") or {}
            if not isinstance(payload, dict):
                raise ValueError("payload must be an object")
            retry_count = int(data.get("retry_count", 0))
            if retry_count < 0:
                raise ValueError("retry_count must be non-negative")
            return cls(
                id=str(data["id"]),
                job_type=str(data["job_type"]),
                payload=payload,
                priority=JobPriority(data["priority"]),
                status=JobStatus(data.get("status", JobStatus.QUEUED.value)),
                retry_count=retry_count,
                error=data.get("error"),
                created_at=_parse_ts(data.get("created_at")) or utcnow(),
                updated_at=_parse_ts(data.get("updated_at")) or utcnow(),
                scheduled_at=_parse_ts(data.get("scheduled_at")),
                started_at=_parse_ts(data.get("started_at")),
                completed_at=_parse_ts(data.get("completed_at")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise JobDeserializationError(f"Invalid job document: {e}") from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: Any) -> "Job":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise JobDeserializationError(f"Job entry is not JSON: {e}", raw=raw) from e
        try:
            return cls.from_dict(data)
        except JobDeserializationError as e:
            e.raw = raw
            raise


def create_job(
    job_type: str,
    payload: Optional[Dict[str, Any]] = None,
    priority: JobPriority = JobPriority.NORMAL,
    job_id: Optional[str] = None,
) -> Job:
    """Create a new queued job."""
    job = Job(job_type=job_type, payload=dict(payload or {}), priority=priority)
    if job_id:
        job.id = job_id
    return job


class Outcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class HandlerResult:
    """What a handler reports back for one execution."""
    outcome: Outcome
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "HandlerResult":
        return cls(Outcome.SUCCESS)

    @classmethod
    def retryable(cls, reason: str) -> "HandlerResult":
        return cls(Outcome.RETRYABLE, reason)

    @classmethod
    def fatal(cls, reason: str) -> "HandlerResult":
        return cls(Outcome.FATAL, reason)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS


class JobHandler(ABC):
    """Abstract base class for job handlers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Job type this handler executes."""
        pass

    @abstractmethod
    async def handle(self, job_type: str, payload: Dict[str, Any]) -> Any:
        """Run the job.

        Return a HandlerResult, or any other value for success. Raise
        FatalJobError to fail without retrying; any other exception is
        retried.
        """
        pass


class FunctionHandler(JobHandler):
    """Job handler from a function taking the payload."""

    def __init__(
        self,
        handler_name: str,
        func: Callable[[Dict[str, Any]], Any],
    ):
        self._name = handler_name
        self._func = func

    @property
    def name(self) -> str:
        return self._name

    async def handle(self, job_type: str, payload: Dict[str, Any]) -> Any:
        if asyncio.iscoroutinefunction(self._func):
            return await self._func(payload)
        return self._func(payload)


class HandlerRegistry:
    """Maps job types to handlers."""

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, handler: JobHandler) -> None:
        self._handlers[handler.name] = handler

    def register_function(
        self,
        name: str,
        func: Callable[[Dict[str, Any]], Any],
    ) -> None:
        self._handlers[name] = FunctionHandler(name, func)

    def get(self, name: str) -> Optional[JobHandler]:
        return self._handlers.get(name)

    def handler(self, name: str):
        """Decorator to register a function as handler."""
        def decorator(func: Callable[[Dict[str, Any]], Any]):
            self.register_function(name, func)
            return func
        return decorator

    @property
    def handlers(self) -> Dict[str, JobHandler]:
        return self._handlers.copy()

    async def execute(self, job_type: str, payload: Dict[str, Any]) -> HandlerResult:
        """Run the handler for `job_type` and classify the outcome."""
        handler = self.get(job_type)
        if handler is None:
            return HandlerResult.fatal(f"Unknown job type: {job_type}")
        try:
            result = await handler.handle(job_type, payload)
        except FatalJobError as e:
            return HandlerResult.fatal(str(e) or type(e).__name__)
        except Exception as e:
            return HandlerResult.retryable(str(e) or type(e).__name__)
        if isinstance(result, HandlerResult):
            return result
        return HandlerResult.success()
