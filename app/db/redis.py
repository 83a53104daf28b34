"""Redis connection management.

Redis only holds ephemeral, shared state here: rate-limit buckets for
the billable endpoints and the maintenance task lists (reconciliation,
stale sweeps).  Nothing billable lives in Redis; entitlement counters
and payment records are in the ledger, which has to survive a restart.

REDIS_URL unset (local dev, tests) → ``redis_pool`` is None and both
consumers use their in-memory implementations.  Socket timeouts are
short: a rate-limit check sits in front of every billable POST and must
not hang it.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)

SOCKET_TIMEOUT_SECONDS = 2.0

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
        socket_timeout=SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=SOCKET_TIMEOUT_SECONDS,
        health_check_interval=30,
    )
else:
    redis_pool = None


async def redis_status() -> str:
    """"ok", "degraded" or "not_configured", for /health."""
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except (RedisError, OSError) as exc:
        logger.warning("Redis ping failed: %s", exc)
        return "degraded"
    return "ok"


@asynccontextmanager
async def lifespan_redis():
    """Check Redis on startup, close the pool on shutdown."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured, rate limits and tasks use in-memory fallbacks")
        yield
        return

    status = await redis_status()
    if status == "ok":
        logger.info("Redis connected for rate limits and task queues")
    else:
        logger.error("Redis unreachable on startup, rate-limited routes will return errors")
    yield
    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
