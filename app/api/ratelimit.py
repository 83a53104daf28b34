"""Per-user rate limits for billable routes.

The guard depends on require_user, so a request is authenticated before
it costs a token and an anonymous flood never drains a real user's
bucket.  Buckets are keyed by (scope, user_id): every billable POST
shares the "billable" scope, whatever its path.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from app.api.dependencies import require_user
from app.core.metrics import RATE_LIMIT_HITS
from app.db.redis import redis_pool
from app.models.principal import Principal
from app.services.rate_limiter import (
    InMemoryRateLimiter,
    RateLimitConfig,
    RateLimiter,
    RedisRateLimiter,
)

logger = logging.getLogger(__name__)

_rate_limiter: RateLimiter = (
    RedisRateLimiter(redis_pool) if redis_pool is not None else InMemoryRateLimiter()
)

# Verification requests and action authorizations: a burst of 20, then
# one every two seconds.
BILLABLE_RATE_LIMIT = RateLimitConfig(capacity=20, refill_rate=0.5)


def require_rate_limit(scope: str, config: RateLimitConfig):
    """Dependency factory: one token from the caller's ``scope`` bucket.

    Sets X-RateLimit-* on the response (via request.state, copied by
    RequestContextMiddleware) and raises 429 with Retry-After when the
    bucket is empty.
    """

    async def _check(
        request: Request,
        principal: Annotated[Principal, Depends(require_user)],
    ) -> None:
        key = f"{scope}:{principal.user_id}"
        result = await _rate_limiter.check(key, config)

        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
        }
        request.state.rate_limit_headers = headers
        if result.allowed:
            return

        RATE_LIMIT_HITS.labels(scope=scope).inc()
        logger.warning(
            "Rate limit exceeded scope=%s retry_after=%.1fs",
            scope,
            result.retry_after,
            extra={"user_id": principal.user_id},
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={
                **headers,
                "X-RateLimit-Remaining": "0",
                "Retry-After": str(int(result.retry_after) + 1),
            },
        )

    return _check


require_billable_rate_limit = require_rate_limit("billable", BILLABLE_RATE_LIMIT)
