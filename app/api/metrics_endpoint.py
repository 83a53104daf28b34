"""Prometheus metrics endpoint.

Scraped by Prometheus; returns the text exposition format, not JSON:

  # HELP entitlement_decisions_total Entitlement gate outcomes
  # TYPE entitlement_decisions_total counter
  entitlement_decisions_total{feature="verification",result="consumed"} 12.0

Queue depths are gauges the worker only updates when it handles a task,
so an idle worker would report stale numbers.  They are re-read on each
scrape.  The billing counters reveal plan usage and payment volume;
deployments expose /metrics on the internal network only.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from app.core.metrics import QUEUE_DEPTH
from app.services.task_queue import MAINTENANCE_QUEUES, task_queue

logger = logging.getLogger(__name__)

router = APIRouter(tags=["observability"])


async def refresh_queue_depths() -> None:
    for queue_name in MAINTENANCE_QUEUES:
        try:
            depth = await task_queue.queue_length(queue_name)
        except (RedisError, OSError) as exc:
            logger.warning("Queue depth unavailable for [%s]: %s", queue_name, exc)
            continue
        QUEUE_DEPTH.labels(queue_name=queue_name).set(depth)


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    await refresh_queue_depths()
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
