import os

import pytest

from benchmark_worker.core.config import reset_settings

# Environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "LOG_LEVEL",
    "LOG_JSON",
    "REDIS_URL",
    "WORKER_KEY_PREFIX",
    "WORKER_POOL_SIZE",
    "WORKER_MAX_RETRIES",
    "WORKER_BACKOFF_BASE_SECONDS",
    "WORKER_BACKOFF_MAX_SECONDS",
    "WORKER_BACKOFF_EXPONENTIAL",
    "WORKER_PROMOTER_BATCH_LIMIT",
    "WORKER_SCHEDULER_ENABLED",
    "WORKER_METRICS_PORT",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and the settings cache between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_settings()
