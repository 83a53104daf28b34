"""Background worker process.

RUN:  python -m app.worker

Same image as the API, different command:
  api:    uvicorn app.main:app --host 0.0.0.0 --port 8000
  worker: python -m app.worker

QUEUES
-------
  verification_reconcile     rebuild credential projections from request
                             timelines; payload {"request_id": id | None}
  stale_verification_sweep   count pending requests idle for longer than
                             VERIFICATION_STALE_AFTER_HOURS; reported on
                             the stale_verification_requests gauge, never
                             auto-rejected

The loop polls every registered queue round-robin, one task at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from app.core.config import SETTINGS
from app.core.errors import DomainError
from app.core.logging import setup_logging
from app.core.metrics import QUEUE_DEPTH, STALE_VERIFICATION_REQUESTS
from app.services.task_queue import RECONCILE_QUEUE, STALE_SWEEP_QUEUE, task_queue
from app.services.verification_service import verification_service

TaskHandler = Callable[[dict], Coroutine[Any, Any, None]]

logger = logging.getLogger("worker")

_HOUR_MS = 60 * 60 * 1000


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------


@register_handler(RECONCILE_QUEUE)
async def handle_reconcile(payload: dict) -> None:
    request_id = payload.get("request_id")
    if request_id:
        repaired = await verification_service.reconcile(request_id)
        logger.info(
            "Reconciled request=%s repaired=%s",
            request_id,
            repaired,
            extra={"verification_request_id": request_id},
        )
        return
    repaired_count = await verification_service.reconcile_all()
    logger.info("Full reconciliation repaired=%d", repaired_count)


@register_handler(STALE_SWEEP_QUEUE)
async def handle_stale_sweep(payload: dict) -> None:
    older_than_ms = SETTINGS.verification_stale_after_hours * _HOUR_MS
    stale = await verification_service.stale_requests(older_than_ms)
    STALE_VERIFICATION_REQUESTS.set(len(stale))
    for request in stale:
        logger.warning(
            "Verification request=%s pending since %d with no reviewer activity",
            request.id,
            request.last_entry.at,
            extra={
                "verification_request_id": request.id,
                "credential_id": request.credential_id,
            },
        )
    logger.info("Stale sweep found %d request(s)", len(stale))


# ---------------------------------------------------------------------------
# Main worker loop
# ---------------------------------------------------------------------------


async def run_once(queue_name: str, timeout: int = 1) -> bool:
    """Process at most one task from ``queue_name``.  True if one ran."""
    task = await task_queue.dequeue(queue_name, timeout=timeout)
    if task is None:
        return False

    handler = HANDLERS[queue_name]
    try:
        await handler(task.payload)
        logger.info("Task %s on [%s] completed", task.id, queue_name, extra={"task": task.id})
    except DomainError as exc:
        logger.warning(
            "Task %s on [%s] refused: %s",
            task.id,
            queue_name,
            exc.message,
            extra={"task": task.id},
        )
    except Exception:
        logger.exception("Task %s on [%s] failed", task.id, queue_name, extra={"task": task.id})
    QUEUE_DEPTH.labels(queue_name=queue_name).set(await task_queue.queue_length(queue_name))
    return True


async def run_worker() -> None:
    """Poll all registered queues and dispatch tasks to handlers."""
    queues = list(HANDLERS.keys())
    logger.info("Worker started, listening on queues: %s", queues)

    while True:
        for queue_name in queues:
            await run_once(queue_name)


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
