from __future__ import annotations

import pytest

from benchmark_worker.core.errors import JobNotFoundError, StoreError
from benchmark_worker.core.job_queue import (
    DeadLetterAdmin,
    InMemoryQueueStore,
    JobPriority,
    JobStatus,
    create_job,
)


async def _dead_letter(store, job_type="t", priority=JobPriority.HIGH, retries=2):
    job = create_job(job_type, {"k": "v"}, priority)
    job.mark_processing()
    job.retry_count = retries
    job.mark_failed("exhausted retries")
    await store.append_dead_letter(job)
    return job


@pytest.fixture
def store():
    return InMemoryQueueStore()


@pytest.fixture
def admin(store):
    return DeadLetterAdmin(store)


class TestDeadLetterAdmin:
    @pytest.mark.asyncio
    async def test_list_does_not_mutate(self, store, admin):
        job = await _dead_letter(store)
        assert [j.id for j in await admin.list()] == [job.id]
        assert [j.id for j in await admin.list()] == [job.id]
        assert await admin.count() == 1

    @pytest.mark.asyncio
    async def test_get(self, store, admin):
        job = await _dead_letter(store)
        assert (await admin.get(job.id)).error == "exhausted retries"
        with pytest.raises(JobNotFoundError):
            await admin.get("missing")

    @pytest.mark.asyncio
    async def test_replay_resets_and_requeues_on_priority_queue(self, store, admin):
        job = await _dead_letter(store, priority=JobPriority.CRITICAL)

        replayed = await admin.replay(job.id)
        assert replayed.status == JobStatus.QUEUED
        assert replayed.retry_count == 0
        assert replayed.error is None

        assert await admin.count() == 0
        assert await store.delayed_length() == 0
        queued = await store.blocking_pop_any([store.queue_name(JobPriority.CRITICAL)], 0)
        assert queued.id == job.id
        assert queued.retry_count == 0
        assert queued.error is None

    @pytest.mark.asyncio
    async def test_replay_missing_job(self, admin):
        with pytest.raises(JobNotFoundError) as exc_info:
            await admin.replay("missing")
        assert exc_info.value.job_id == "missing"

    @pytest.mark.asyncio
    async def test_replay_twice_fails_second_time(self, store, admin):
        job = await _dead_letter(store)
        await admin.replay(job.id)
        with pytest.raises(JobNotFoundError):
            await admin.replay(job.id)

    @pytest.mark.asyncio
    async def test_failed_push_restores_entry(self):
        class ReadOnlyQueues(InMemoryQueueStore):
            async def push(self, queue_name, job):
                raise StoreError("push", "read only replica")

        store = ReadOnlyQueues()
        admin = DeadLetterAdmin(store)
        job = await _dead_letter(store)

        with pytest.raises(StoreError):
            await admin.replay(job.id)

        [restored] = await admin.list()
        assert restored.id == job.id
        assert restored.status == JobStatus.FAILED
        assert restored.error == "exhausted retries"
        assert restored.retry_count == 2

    @pytest.mark.asyncio
    async def test_purge(self, store, admin):
        keep = await _dead_letter(store)
        drop = await _dead_letter(store)

        purged = await admin.purge(drop.id)
        assert purged.id == drop.id
        assert [j.id for j in await admin.list()] == [keep.id]
        with pytest.raises(JobNotFoundError):
            await admin.purge(drop.id)
