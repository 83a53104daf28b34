"""Token-bucket rate limiting for billable endpoints.

Every POST that can consume an entitlement or emit a payment obligation
is limited per caller.  A client stuck in a retry loop would otherwise
churn obligations and ledger counters.

TOKEN BUCKET
-------------
A bucket holds ``capacity`` tokens and refills at ``refill_rate`` per
second; each request costs one.  Short bursts (a recruiter posting a
batch of jobs) pass, while the long-run average stays bounded.  State
is two numbers per caller: (tokens, last_refill).

Two backends behind one Protocol, the same split as the task queue:
in-memory for dev and tests, Redis for shared limits across replicas.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    """allowed:     the request may proceed
    remaining:   whole tokens left in the bucket
    limit:       bucket capacity
    retry_after: seconds until the next token (0 when allowed)
    """

    allowed: bool
    remaining: int
    limit: int
    retry_after: float


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """capacity is the burst size, refill_rate the sustained rate/sec.

    capacity=60, refill_rate=1.0 means 60 at once, then one per second.
    """

    capacity: int = 60
    refill_rate: float = 1.0


@runtime_checkable
class RateLimiter(Protocol):
    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult: ...


def _take(tokens: float, elapsed: float, config: RateLimitConfig) -> tuple[float, bool]:
    """Refill for ``elapsed`` seconds, then try to take one token."""
    tokens = min(float(config.capacity), tokens + elapsed * config.refill_rate)
    if tokens >= 1:
        return tokens - 1, True
    return tokens, False


class InMemoryRateLimiter:
    """Per-process buckets.  With N replicas a caller effectively gets N
    buckets, so production runs the Redis limiter."""

    def __init__(self) -> None:
        # key -> (tokens_remaining, last_refill_timestamp)
        self._buckets: dict[str, tuple[float, float]] = {}

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = time.monotonic()
        tokens, last_refill = self._buckets.get(key, (float(config.capacity), now))
        tokens, allowed = _take(tokens, now - last_refill, config)
        self._buckets[key] = (tokens, now)

        if allowed:
            return RateLimitResult(
                allowed=True, remaining=int(tokens), limit=config.capacity, retry_after=0
            )
        return RateLimitResult(
            allowed=False,
            remaining=0,
            limit=config.capacity,
            retry_after=(1 - tokens) / config.refill_rate,
        )


class RedisRateLimiter:
    """Redis-backed token bucket shared by all API replicas.

    Refill-and-take is a read-modify-write, so it runs as one Lua
    script: Redis executes scripts atomically, and two concurrent
    requests cannot both spend the same token.
    """

    # KEYS[1] = bucket key
    # ARGV = capacity, refill_rate, now (seconds)
    # returns {allowed 0|1, remaining, retry_after_ms}
    _LUA_SCRIPT = """
    local key = KEYS[1]
    local capacity = tonumber(ARGV[1])
    local refill_rate = tonumber(ARGV[2])
    local now = tonumber(ARGV[3])
    local ttl = math.ceil(capacity / refill_rate) + 60

    local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
    local tokens = tonumber(bucket[1])
    local last_refill = tonumber(bucket[2])
    if tokens == nil then
        tokens = capacity
        last_refill = now
    end

    tokens = math.min(capacity, tokens + (now - last_refill) * refill_rate)
    if tokens >= 1 then
        tokens = tokens - 1
        redis.call('HSET', key, 'tokens', tokens, 'last_refill', now)
        redis.call('EXPIRE', key, ttl)
        return {1, math.floor(tokens), 0}
    end

    redis.call('HSET', key, 'tokens', tokens, 'last_refill', now)
    redis.call('EXPIRE', key, ttl)
    return {0, 0, math.ceil((1 - tokens) / refill_rate * 1000)}
    """

    def __init__(self, redis_client) -> None:
        self._redis = redis_client
        self._script = None

    async def _get_script(self):
        if self._script is None:
            self._script = self._redis.register_script(self._LUA_SCRIPT)
        return self._script

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        script = await self._get_script()
        allowed, remaining, retry_after_ms = await script(
            keys=[f"ratelimit:{key}"],
            args=[config.capacity, config.refill_rate, time.time()],
        )
        return RateLimitResult(
            allowed=bool(allowed),
            remaining=int(remaining),
            limit=config.capacity,
            retry_after=retry_after_ms / 1000,
        )
