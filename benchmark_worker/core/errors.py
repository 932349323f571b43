"""Job queue error taxonomy.

Separates operational failures (talking to the queue store) from job-level
failures (raised by handlers) so that one is never mistaken for the other.
"""

from __future__ import annotations

from typing import Optional


class JobQueueError(Exception):
    """Base class for job queue errors."""


class StoreError(JobQueueError):
    """Communication with the queue store failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation}: {message}")


class JobDeserializationError(JobQueueError):
    """A stored entry could not be parsed into a job."""

    def __init__(self, message: str, raw: Optional[str] = None):
        self.raw = raw
        super().__init__(message)


class JobNotFoundError(JobQueueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidTransitionError(JobQueueError):
    """Job status change not allowed by the state machine."""


class FatalJobError(Exception):
    """Raised by a handler to fail a job without retrying it."""


__all__ = [
    "JobQueueError",
    "StoreError",
    "JobDeserializationError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "FatalJobError",
]
