"""Dead-letter administration.

Read and replay operations over the dead-letter list. Lookups are linear
scans; the list is expected to stay small in a healthy deployment.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from benchmark_worker.core.errors import JobNotFoundError, StoreError
from benchmark_worker.core.job_queue.backends import QueueStore
from benchmark_worker.core.job_queue.core import Job

logger = logging.getLogger(__name__)


class DeadLetterAdmin:
    def __init__(self, store: QueueStore):
        self._store = store

    async def list(self, limit: Optional[int] = 100) -> List[Job]:
        """Up to `limit` dead-lettered jobs, newest first. Does not mutate."""
        return await self._store.list_dead_letter(limit)

    async def count(self) -> int:
        return await self._store.dead_letter_length()

    async def get(self, job_id: str) -> Job:
        for job in await self._store.list_dead_letter(None):
            if job.id == job_id:
                return job
        raise JobNotFoundError(job_id)

    async def replay(self, job_id: str) -> Job:
        """Reset a dead-lettered job and push it back onto its priority queue."""
        await self.get(job_id)

        job = await self._store.remove_dead_letter(job_id)
        if job is None:
            # Replayed or purged concurrently
            raise JobNotFoundError(job_id)

        original = Job.from_dict(job.to_dict())
        job.reset_for_replay()
        try:
            await self._store.push(self._store.queue_name(job.priority), job)
        except StoreError:
            logger.error(f"Replay of job {job_id} failed, restoring dead-letter entry")
            await self._store.append_dead_letter(original)
            raise

        logger.info(f"Dead letter job {job_id} re-enqueued ({job.priority.value})")
        return job

    async def purge(self, job_id: str) -> Job:
        """Permanently discard a dead-lettered job."""
        job = await self._store.remove_dead_letter(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        logger.info(f"Dead letter job {job_id} purged")
        return job
