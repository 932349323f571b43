"""Runtime settings for the benchmark worker.

Values come from the environment (or `.env`), optionally overridden by a JSON
config file passed on the command line.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic_settings import BaseSettings

from benchmark_worker.core.job_queue.backoff import BackoffPolicy
from benchmark_worker.core.job_queue.worker import WorkerConfig


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    REDIS_URL: str = "redis://localhost:6379/0"
    WORKER_KEY_PREFIX: str = "llm-benchmark"

    # Worker pool
    WORKER_POOL_SIZE: int = os.cpu_count() or 1
    WORKER_BLOCKING_TIMEOUT_SECONDS: float = 5.0
    WORKER_STORE_ERROR_SLEEP_SECONDS: float = 1.0
    WORKER_SHUTDOWN_TIMEOUT_SECONDS: float = 30.0

    # Retry policy
    WORKER_MAX_RETRIES: int = 3
    WORKER_BACKOFF_BASE_SECONDS: float = 5.0
    WORKER_BACKOFF_MAX_SECONDS: float = 300.0
    WORKER_BACKOFF_MULTIPLIER: float = 2.0
    WORKER_BACKOFF_EXPONENTIAL: bool = True

    # Delayed-job promoter
    WORKER_PROMOTER_TICK_SECONDS: float = 1.0
    WORKER_PROMOTER_BATCH_LIMIT: int = 100

    # Recurring jobs
    WORKER_SCHEDULER_ENABLED: bool = True
    WORKER_SCHEDULER_TICK_SECONDS: float = 60.0

    # 0 disables the Prometheus HTTP exporter
    WORKER_METRICS_PORT: int = 0
    WORKER_METRICS_LOG_INTERVAL_SECONDS: float = 60.0

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_seconds=self.WORKER_BACKOFF_BASE_SECONDS,
            max_seconds=self.WORKER_BACKOFF_MAX_SECONDS,
            multiplier=self.WORKER_BACKOFF_MULTIPLIER,
            exponential=self.WORKER_BACKOFF_EXPONENTIAL,
        )

    def worker_config(self) -> WorkerConfig:
        return WorkerConfig(
            pool_size=max(1, self.WORKER_POOL_SIZE),
            blocking_timeout_seconds=self.WORKER_BLOCKING_TIMEOUT_SECONDS,
            max_retries=max(0, self.WORKER_MAX_RETRIES),
            backoff=self.backoff_policy(),
            promoter_tick_seconds=self.WORKER_PROMOTER_TICK_SECONDS,
            promoter_batch_limit=max(1, self.WORKER_PROMOTER_BATCH_LIMIT),
            store_error_sleep_seconds=self.WORKER_STORE_ERROR_SLEEP_SECONDS,
            shutdown_timeout_seconds=self.WORKER_SHUTDOWN_TIMEOUT_SECONDS,
        )


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    global _settings_cache
    _settings_cache = None


def load_settings_file(
    path: Union[str, Path],
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Build settings from a JSON file layered over the environment.

    Keys are setting names (case-insensitive). Explicit `overrides` win over
    both the file and the environment.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a JSON object: {path}")
    values = {str(k).upper(): v for k, v in data.items()}
    values.update({k.upper(): v for k, v in (overrides or {}).items()})
    return Settings(**values)
