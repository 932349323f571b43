from __future__ import annotations

import time
from datetime import timedelta

import pytest

from benchmark_worker.core.job_queue import (
    InMemoryQueueStore,
    JobPriority,
    JobProducer,
    JobStatus,
)


@pytest.fixture
def store():
    return InMemoryQueueStore()


@pytest.fixture
def producer(store):
    return JobProducer(store)


class TestJobProducer:
    @pytest.mark.asyncio
    async def test_enqueue_pushes_to_priority_queue(self, store, producer):
        job = await producer.enqueue("evaluate", {"submission_id": "s1"}, JobPriority.HIGH)

        assert job.status == JobStatus.QUEUED
        assert await producer.queue_size(JobPriority.HIGH) == 1
        assert await producer.delayed_queue_size() == 0
        popped = await store.blocking_pop_any([store.queue_name(JobPriority.HIGH)], 0)
        assert popped.payload == {"submission_id": "s1"}

    @pytest.mark.asyncio
    async def test_enqueue_with_delay_goes_to_delayed_set(self, store, producer):
        before = time.time()
        job = await producer.enqueue("evaluate", delay=timedelta(seconds=30))

        assert job.scheduled_at is not None
        assert await producer.total_queue_size() == 0
        assert await producer.delayed_queue_size() == 1
        assert await store.pop_due(before + 29, 10) == []
        [due] = await store.pop_due(time.time() + 31, 10)
        assert due.id == job.id

    @pytest.mark.asyncio
    async def test_numeric_delay(self, producer):
        await producer.enqueue("evaluate", delay=2.5)
        assert await producer.delayed_queue_size() == 1

    @pytest.mark.asyncio
    async def test_enqueue_batch(self, producer):
        jobs = await producer.enqueue_batch(
            [
                ("a", {}, JobPriority.LOW),
                ("b", {"x": 1}, JobPriority.LOW),
                ("c", {}, JobPriority.CRITICAL),
            ]
        )
        assert [j.job_type for j in jobs] == ["a", "b", "c"]
        assert await producer.queue_size(JobPriority.LOW) == 2
        assert await producer.total_queue_size() == 3

    @pytest.mark.asyncio
    async def test_clear_queue(self, producer):
        await producer.enqueue("a", priority=JobPriority.LOW)
        await producer.enqueue("b", priority=JobPriority.NORMAL)
        await producer.clear_queue(JobPriority.LOW)
        assert await producer.queue_size(JobPriority.LOW) == 0
        assert await producer.queue_size(JobPriority.NORMAL) == 1
