"""Structured logging configuration.

Features:
- JSON formatted logs for aggregation
- Job and worker correlation IDs
- Extra fields passed through `extra=`
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

# Context variables for job tracking
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
worker_id_var: ContextVar[Optional[int]] = ContextVar("worker_id", default=None)

# Attributes every LogRecord carries; anything else came from `extra=`.
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        service_name: str = "llm-benchmark-worker",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        if (job_id := job_id_var.get()) is not None:
            log_entry["job_id"] = job_id
        if (worker_id := worker_id_var.get()) is not None:
            log_entry["worker_id"] = worker_id

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if extra:
            log_entry["extra"] = extra

        if record.exc_info and self.include_stack_trace:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


def setup_structured_logging(
    service_name: str = "llm-benchmark-worker",
    level: int = logging.INFO,
    json_output: bool = True,
) -> None:
    """Configure root logging for the worker process."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if json_output:
        formatter: logging.Formatter = StructuredFormatter(service_name=service_name)
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)


@contextmanager
def job_context(job_id: str, worker_id: Optional[int] = None) -> Iterator[None]:
    """Tag log records emitted inside the block with the job and worker."""
    job_token = job_id_var.set(job_id)
    worker_token = worker_id_var.set(worker_id)
    try:
        yield
    finally:
        job_id_var.reset(job_token)
        worker_id_var.reset(worker_token)
