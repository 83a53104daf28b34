"""Maintenance task queue.

Reconciliation passes and the stale-request sweep walk every
verification request in the ledger, which is too slow for a request
cycle.  The admin endpoints enqueue a task and return 202; the worker
(``python -m app.worker``) drains the queues.

Redis layout (one list per queue, FIFO via LPUSH + BRPOP):

    tasks:verification_reconcile            list of task JSON
    tasks:verification_reconcile:pending:<dedupe_key>
                                            task JSON while it waits

Both task kinds are idempotent sweeps, so a task that is already waiting
absorbs identical requests: a second "reconcile everything" click gets
the first task back instead of queueing a duplicate pass.  Delivery is
at-most-once; the next sweep repairs whatever a lost task would have.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Protocol, runtime_checkable

from app.db.redis import redis_pool

RECONCILE_QUEUE = "verification_reconcile"
STALE_SWEEP_QUEUE = "stale_verification_sweep"
MAINTENANCE_QUEUES = (RECONCILE_QUEUE, STALE_SWEEP_QUEUE)

# Dedupe markers expire even if the task is never dequeued.
PENDING_MARKER_TTL_SECONDS = 3600


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    queue: str
    payload: dict
    enqueued_at: int
    dedupe_key: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> Task:
        return cls(**json.loads(raw))


def _new_task(queue: str, payload: dict, dedupe_key: str | None) -> Task:
    if queue not in MAINTENANCE_QUEUES:
        raise ValueError(f"unknown task queue {queue!r}")
    return Task(
        id=str(uuid.uuid4()),
        queue=queue,
        payload=payload,
        enqueued_at=int(time.time() * 1000),
        dedupe_key=dedupe_key,
    )


@runtime_checkable
class TaskQueue(Protocol):
    async def enqueue(
        self, queue: str, payload: dict, *, dedupe_key: str | None = None
    ) -> tuple[Task, bool]: ...
    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None: ...
    async def queue_length(self, queue: str) -> int: ...


class InMemoryTaskQueue:
    """Single-process queue for tests and local dev."""

    def __init__(self) -> None:
        self._queues: dict[str, list[Task]] = {}

    async def enqueue(
        self, queue: str, payload: dict, *, dedupe_key: str | None = None
    ) -> tuple[Task, bool]:
        task = _new_task(queue, payload, dedupe_key)
        waiting = self._queues.setdefault(queue, [])
        if dedupe_key is not None:
            for existing in waiting:
                if existing.dedupe_key == dedupe_key:
                    return existing, False
        waiting.append(task)
        return task, True

    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None:
        waiting = self._queues.get(queue)
        return waiting.pop(0) if waiting else None

    async def queue_length(self, queue: str) -> int:
        return len(self._queues.get(queue, []))


class RedisTaskQueue:
    """Queues shared by every API replica and worker."""

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    @staticmethod
    def _list_key(queue: str) -> str:
        return f"tasks:{queue}"

    @staticmethod
    def _pending_key(queue: str, dedupe_key: str) -> str:
        return f"tasks:{queue}:pending:{dedupe_key}"

    async def enqueue(
        self, queue: str, payload: dict, *, dedupe_key: str | None = None
    ) -> tuple[Task, bool]:
        task = _new_task(queue, payload, dedupe_key)
        raw = task.to_json()
        if dedupe_key is not None:
            marker = self._pending_key(queue, dedupe_key)
            claimed = await self._redis.set(
                marker, raw, nx=True, ex=PENDING_MARKER_TTL_SECONDS
            )
            if not claimed:
                existing = await self._redis.get(marker)
                if existing is not None:
                    return Task.from_json(existing), False
                # Marker expired between SET and GET; queue a fresh task.
        await self._redis.lpush(self._list_key(queue), raw)
        return task, True

    async def dequeue(self, queue: str, timeout: int = 5) -> Task | None:
        result = await self._redis.brpop(self._list_key(queue), timeout=timeout)
        if result is None:
            return None
        task = Task.from_json(result[1])
        if task.dedupe_key is not None:
            await self._redis.delete(self._pending_key(queue, task.dedupe_key))
        return task

    async def queue_length(self, queue: str) -> int:
        return await self._redis.llen(self._list_key(queue))


if redis_pool is not None:
    task_queue: TaskQueue = RedisTaskQueue(redis_pool)
else:
    task_queue = InMemoryTaskQueue()
