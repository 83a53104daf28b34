"""Operator endpoints.

reconcile and stale-sweep schedule maintenance work for the worker and
return 202 with the task that will do it.  Triggering the same job again
while it is still waiting returns the waiting task with
``already_queued`` set rather than a second copy.

credits grants prepaid credits to a user (sign-up bonus, goodwill).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from app.api.dependencies import AdminPrincipal
from app.core.metrics import QUEUE_DEPTH
from app.services.credit_wallet import MAX_AWARD, credit_wallet
from app.services.task_queue import RECONCILE_QUEUE, STALE_SWEEP_QUEUE, task_queue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


class ReconcileIn(BaseModel):
    # None reconciles every request and sweeps orphaned credentials
    request_id: str | None = Field(default=None, min_length=1, max_length=200)


class TaskAccepted(BaseModel):
    task_id: str
    queue: str
    already_queued: bool


async def _schedule(queue: str, payload: dict, dedupe_key: str, principal_id: str) -> TaskAccepted:
    task, created = await task_queue.enqueue(queue, payload, dedupe_key=dedupe_key)
    already_queued = not created
    QUEUE_DEPTH.labels(queue_name=queue).set(await task_queue.queue_length(queue))
    logger.info(
        "%s task=%s on [%s] key=%s",
        "Already queued" if already_queued else "Enqueued",
        task.id,
        queue,
        dedupe_key,
        extra={"user_id": principal_id, "task": task.id},
    )
    return TaskAccepted(task_id=task.id, queue=task.queue, already_queued=already_queued)


@router.post(
    "/reconcile", response_model=TaskAccepted, status_code=status.HTTP_202_ACCEPTED
)
async def enqueue_reconcile(body: ReconcileIn, principal: AdminPrincipal) -> TaskAccepted:
    scope = f"request:{body.request_id}" if body.request_id else "all"
    return await _schedule(
        RECONCILE_QUEUE,
        {"request_id": body.request_id, "requested_by": principal.user_id},
        scope,
        principal.user_id,
    )


@router.post(
    "/stale-sweep", response_model=TaskAccepted, status_code=status.HTTP_202_ACCEPTED
)
async def enqueue_stale_sweep(principal: AdminPrincipal) -> TaskAccepted:
    return await _schedule(
        STALE_SWEEP_QUEUE, {"requested_by": principal.user_id}, "sweep", principal.user_id
    )


class CreditAwardIn(BaseModel):
    credit_type: str = Field(min_length=1, max_length=50)
    amount: int = Field(ge=1, le=MAX_AWARD)
    reason: str = Field(min_length=1, max_length=200)


class CreditBalancesOut(BaseModel):
    user_id: str
    verification_credits: int
    posting_credits: int


@router.post("/credits/{user_id}", response_model=CreditBalancesOut)
async def award_credits(
    user_id: str, body: CreditAwardIn, principal: AdminPrincipal
) -> CreditBalancesOut:
    balances = await credit_wallet.award(
        user_id, body.credit_type, body.amount, body.reason, principal.user_id
    )
    return CreditBalancesOut(user_id=user_id, **balances)
