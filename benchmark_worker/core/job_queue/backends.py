"""Job Queue Backends.

Provides queue store implementations:
- In-memory store (testing, single process)
- Redis-based store (production)

Both keep delayed and dead-lettered entries indexed by job id, so removal
never depends on matching a serialized body.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Iterator, List, Optional, Sequence, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from benchmark_worker.core.errors import JobDeserializationError, StoreError
from benchmark_worker.core.job_queue.core import Job, JobPriority
from benchmark_worker.core.job_queue.metrics import (
    entries_dropped_total,
    store_errors_total,
)

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "llm-benchmark"


def _decode(raw: Any, source: str) -> Optional[Job]:
    """Parse a stored entry, dropping it when malformed."""
    try:
        return Job.from_json(raw)
    except JobDeserializationError as e:
        entries_dropped_total.labels(source=source).inc()
        logger.error(
            f"Dropping malformed {source} entry: {e}",
            extra={"source": source, "raw": str(raw)[:512]},
        )
        return None


class QueueStore(ABC):
    """Shared store holding the priority queues, delayed set and dead-letter list.

    Every method is atomic with respect to concurrent callers.
    """

    def __init__(self, key_prefix: str = DEFAULT_PREFIX):
        self._prefix = key_prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    def queue_name(self, priority: JobPriority) -> str:
        return priority.queue_name(self._prefix)

    def priority_queue_names(self) -> List[str]:
        return [self.queue_name(p) for p in JobPriority.polling_order()]

    @abstractmethod
    async def push(self, queue_name: str, job: Job) -> None:
        """Append to the tail of a FIFO list."""
        pass

    @abstractmethod
    async def blocking_pop_any(
        self,
        queue_names: Sequence[str],
        timeout: float,
    ) -> Optional[Job]:
        """Pop the head of the first non-empty queue, in the given order.

        Waits up to `timeout` seconds; returns None when nothing arrived.
        """
        pass

    @abstractmethod
    async def schedule(self, job: Job, ready_at: float) -> None:
        """Hold a job until `ready_at` (unix seconds)."""
        pass

    @abstractmethod
    async def pop_due(self, now: float, max_count: int) -> List[Job]:
        """Remove and return up to `max_count` jobs ready at `now`, oldest first."""
        pass

    @abstractmethod
    async def append_dead_letter(self, job: Job) -> None:
        pass

    @abstractmethod
    async def list_dead_letter(self, limit: Optional[int] = None) -> List[Job]:
        """Dead-lettered jobs, newest first, without removing them."""
        pass

    @abstractmethod
    async def remove_dead_letter(self, job_id: str) -> Optional[Job]:
        """Remove a dead-lettered job by id; None when it is not there."""
        pass

    @abstractmethod
    async def queue_length(self, queue_name: str) -> int:
        pass

    @abstractmethod
    async def delayed_length(self) -> int:
        pass

    @abstractmethod
    async def dead_letter_length(self) -> int:
        pass

    @abstractmethod
    async def clear(self, queue_name: str) -> None:
        pass

    async def ping(self) -> None:
        """Raise StoreError when the store cannot be reached."""

    async def close(self) -> None:
        pass


class InMemoryQueueStore(QueueStore):
    """In-memory queue store for testing."""

    def __init__(self, key_prefix: str = DEFAULT_PREFIX):
        super().__init__(key_prefix)
        self._lists: Dict[str, Deque[str]] = defaultdict(deque)
        # job_id -> (ready_at, seq, document)
        self._delayed: Dict[str, Tuple[float, int, str]] = {}
        self._dead_letter_ids: Deque[str] = deque()
        self._dead_letter_docs: Dict[str, str] = {}
        self._seq = itertools.count()
        self._cond: Optional[asyncio.Condition] = None

    def _get_cond(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    async def push(self, queue_name: str, job: Job) -> None:
        cond = self._get_cond()
        async with cond:
            self._lists[queue_name].append(job.to_json())
            cond.notify_all()

    def _pop_first(self, queue_names: Sequence[str]) -> Optional[str]:
        for name in queue_names:
            entries = self._lists.get(name)
            if entries:
                return entries.popleft()
        return None

    async def blocking_pop_any(
        self,
        queue_names: Sequence[str],
        timeout: float,
    ) -> Optional[Job]:
        cond = self._get_cond()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        async with cond:
            raw = self._pop_first(queue_names)
            while raw is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                try:
                    await asyncio.wait_for(cond.wait(), remaining)
                except asyncio.TimeoutError:
                    return None
                raw = self._pop_first(queue_names)
        return _decode(raw, "queue")

    async def schedule(self, job: Job, ready_at: float) -> None:
        async with self._get_cond():
            self._delayed[job.id] = (float(ready_at), next(self._seq), job.to_json())

    async def pop_due(self, now: float, max_count: int) -> List[Job]:
        async with self._get_cond():
            due = sorted(
                (ready_at, seq, job_id)
                for job_id, (ready_at, seq, _) in self._delayed.items()
                if ready_at <= now
            )[: max(0, max_count)]
            raws = [self._delayed.pop(job_id)[2] for _, _, job_id in due]
        jobs = []
        for raw in raws:
            job = _decode(raw, "delayed")
            if job is not None:
                jobs.append(job)
        return jobs

    async def append_dead_letter(self, job: Job) -> None:
        async with self._get_cond():
            if job.id in self._dead_letter_docs:
                self._dead_letter_ids.remove(job.id)
            self._dead_letter_ids.appendleft(job.id)
            self._dead_letter_docs[job.id] = job.to_json()

    async def list_dead_letter(self, limit: Optional[int] = None) -> List[Job]:
        async with self._get_cond():
            ids = list(self._dead_letter_ids)
            if limit is not None:
                ids = ids[: max(0, limit)]
            raws = [self._dead_letter_docs[job_id] for job_id in ids]
        jobs = []
        for raw in raws:
            try:
                jobs.append(Job.from_json(raw))
            except JobDeserializationError as e:
                logger.warning(f"Skipping unreadable dead-letter entry: {e}")
        return jobs

    async def remove_dead_letter(self, job_id: str) -> Optional[Job]:
        async with self._get_cond():
            raw = self._dead_letter_docs.pop(job_id, None)
            if raw is None:
                return None
            self._dead_letter_ids.remove(job_id)
        return _decode(raw, "dead_letter")

    async def queue_length(self, queue_name: str) -> int:
        return len(self._lists.get(queue_name, ()))

    async def delayed_length(self) -> int:
        return len(self._delayed)

    async def dead_letter_length(self) -> int:
        return len(self._dead_letter_ids)

    async def clear(self, queue_name: str) -> None:
        async with self._get_cond():
            self._lists.pop(queue_name, None)


# Removes due ids from the delayed set and returns their documents in one step.
_LUA_POP_DUE = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
local docs = {}
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    local doc = redis.call('HGET', KEYS[2], id)
    redis.call('HDEL', KEYS[2], id)
    if doc then
        table.insert(docs, doc)
    else
        table.insert(docs, '')
    end
end
return docs
"""

_LUA_REMOVE_DEAD_LETTER = """
local removed = redis.call('LREM', KEYS[1], 0, ARGV[1])
local doc = redis.call('HGET', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
if removed == 0 and not doc then
    return false
end
if doc then
    return doc
end
return ''
"""


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        store_errors_total.labels(operation=operation).inc()
        raise StoreError(operation, str(e)) from e


class RedisQueueStore(QueueStore):
    """Redis-based queue store.

    Layout under prefix P:
      P:jobs:{critical,high,normal,low}  lists of job documents (LPUSH/BRPOP)
      P:jobs:delayed                     zset job_id -> ready timestamp
      P:jobs:delayed:data                hash job_id -> job document
      P:jobs:dlq                         list of job ids, newest first
      P:jobs:dlq:data                    hash job_id -> job document
    """

    def __init__(self, client: Any, key_prefix: str = DEFAULT_PREFIX):
        super().__init__(key_prefix)
        self._redis = client
        self._pop_due_script: Optional[Any] = None
        self._remove_dlq_script: Optional[Any] = None

    @classmethod
    def from_url(cls, url: str, key_prefix: str = DEFAULT_PREFIX) -> "RedisQueueStore":
        return cls(redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    @property
    def delayed_key(self) -> str:
        return f"{self._prefix}:jobs:delayed"

    @property
    def delayed_data_key(self) -> str:
        return f"{self._prefix}:jobs:delayed:data"

    @property
    def dead_letter_key(self) -> str:
        return f"{self._prefix}:jobs:dlq"

    @property
    def dead_letter_data_key(self) -> str:
        return f"{self._prefix}:jobs:dlq:data"

    async def ping(self) -> None:
        with _store_errors("ping"):
            await self._redis.ping()

    async def close(self) -> None:
        with _store_errors("close"):
            await self._redis.aclose()

    async def push(self, queue_name: str, job: Job) -> None:
        with _store_errors("push"):
            await self._redis.lpush(queue_name, job.to_json())

    async def blocking_pop_any(
        self,
        queue_names: Sequence[str],
        timeout: float,
    ) -> Optional[Job]:
        with _store_errors("blocking_pop_any"):
            if timeout <= 0:
                # BRPOP treats 0 as "wait forever"
                raw = None
                for name in queue_names:
                    raw = await self._redis.rpop(name)
                    if raw is not None:
                        break
            else:
                result = await self._redis.brpop(list(queue_names), timeout=timeout)
                raw = result[1] if result else None
        if raw is None:
            return None
        return _decode(raw, "queue")

    async def schedule(self, job: Job, ready_at: float) -> None:
        with _store_errors("schedule"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self.delayed_data_key, job.id, job.to_json())
                pipe.zadd(self.delayed_key, {job.id: float(ready_at)})
                await pipe.execute()

    async def pop_due(self, now: float, max_count: int) -> List[Job]:
        if max_count <= 0:
            return []
        with _store_errors("pop_due"):
            if self._pop_due_script is None:
                self._pop_due_script = self._redis.register_script(_LUA_POP_DUE)
            raws = await self._pop_due_script(
                keys=[self.delayed_key, self.delayed_data_key],
                args=[now, max_count],
            )
        jobs = []
        for raw in raws or []:
            job = _decode(raw, "delayed")
            if job is not None:
                jobs.append(job)
        return jobs

    async def append_dead_letter(self, job: Job) -> None:
        with _store_errors("append_dead_letter"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self.dead_letter_data_key, job.id, job.to_json())
                pipe.lrem(self.dead_letter_key, 0, job.id)
                pipe.lpush(self.dead_letter_key, job.id)
                await pipe.execute()

    async def list_dead_letter(self, limit: Optional[int] = None) -> List[Job]:
        if limit is not None and limit <= 0:
            return []
        end = -1 if limit is None else limit - 1
        with _store_errors("list_dead_letter"):
            ids = await self._redis.lrange(self.dead_letter_key, 0, end)
            if not ids:
                return []
            raws = await self._redis.hmget(self.dead_letter_data_key, ids)
        jobs = []
        for job_id, raw in zip(ids, raws):
            if raw is None:
                logger.warning(f"Dead-letter entry {job_id} has no stored document")
                continue
            try:
                jobs.append(Job.from_json(raw))
            except JobDeserializationError as e:
                logger.warning(f"Skipping unreadable dead-letter entry {job_id}: {e}")
        return jobs

    async def remove_dead_letter(self, job_id: str) -> Optional[Job]:
        with _store_errors("remove_dead_letter"):
            if self._remove_dlq_script is None:
                self._remove_dlq_script = self._redis.register_script(
                    _LUA_REMOVE_DEAD_LETTER
                )
            raw = await self._remove_dlq_script(
                keys=[self.dead_letter_key, self.dead_letter_data_key],
                args=[job_id],
            )
        if raw is None:
            return None
        return _decode(raw, "dead_letter")

    async def queue_length(self, queue_name: str) -> int:
        with _store_errors("queue_length"):
            return int(await self._redis.llen(queue_name))

    async def delayed_length(self) -> int:
        with _store_errors("delayed_length"):
            return int(await self._redis.zcard(self.delayed_key))

    async def dead_letter_length(self) -> int:
        with _store_errors("dead_letter_length"):
            return int(await self._redis.llen(self.dead_letter_key))

    async def clear(self, queue_name: str) -> None:
        with _store_errors("clear"):
            await self._redis.delete(queue_name)
