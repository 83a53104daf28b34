"""Health and readiness endpoints.

  /health (liveness):
    "Is this process alive?"  Always 200; ``status`` says "ok" or
    "degraded" and ``checks`` says which dependency is impaired.
    Returning 503 here would make the orchestrator restart a container
    that only has a partial outage.

  /ready (readiness):
    "Can this instance serve traffic?"  503 when the ledger is a real
    database and it does not answer.  Billing fails closed without the
    ledger, so an instance that cannot reach it should leave the
    rotation.  Redis is not critical (in-memory fallbacks exist).

RESPONSE
---------
  status:  "ok" | "degraded"
  checks:  ledger, redis, narrative
  slos:    current SLO compliance from in-process Prometheus metrics
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import APIRouter, Response, status
from prometheus_client import REGISTRY

from app.core.config import SETTINGS
from app.core.errors import LedgerUnavailable
from app.core.slo import (
    estimate_p95_ms,
    evaluate_availability,
    evaluate_latency,
    evaluate_verification_consistency,
)
from app.db.ledger import ledger
from app.db.redis import redis_status
from app.repos.ledger import InMemoryLedger

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _sum_counter(
    metric_name: str, where: Callable[[dict[str, str]], bool] | None = None
) -> float:
    """Sum a counter over every label set ``where`` accepts (all by default)."""
    return sum(
        sample.value
        for metric in REGISTRY.collect()
        for sample in metric.samples
        if sample.name == metric_name and (where is None or where(sample.labels))
    )


def _histogram_buckets(metric_name: str) -> dict[float, float]:
    """Cumulative bucket counts keyed by upper bound, summed over labels."""
    buckets: dict[float, float] = {}
    for metric in REGISTRY.collect():
        for sample in metric.samples:
            if sample.name == f"{metric_name}_bucket":
                bound = float(sample.labels["le"])
                buckets[bound] = buckets.get(bound, 0.0) + sample.value
    return buckets


async def _ledger_check() -> str:
    if isinstance(ledger, InMemoryLedger):
        return "in_memory"
    try:
        await ledger.ping()
    except LedgerUnavailable:
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    """Liveness probe + dependency status + SLO compliance."""
    checks: dict[str, str] = {}
    overall = "ok"

    checks["ledger"] = await _ledger_check()
    if checks["ledger"] == "degraded":
        overall = "degraded"

    checks["redis"] = await redis_status()
    if checks["redis"] == "degraded":
        overall = "degraded"

    checks["narrative"] = "configured" if SETTINGS.narrative_url else "not_configured"

    # Per-process approximations: each replica only sees its own
    # counters, and they reset on restart.  Prometheus has the real
    # aggregate.
    total_all = _sum_counter("http_requests_total")
    total_5xx = _sum_counter(
        "http_requests_total", lambda labels: labels.get("status_code", "").startswith("5")
    )
    availability_status = evaluate_availability(int(total_all), int(total_5xx))

    latency_status = evaluate_latency(
        estimate_p95_ms(_histogram_buckets("http_request_duration_seconds"))
    )

    consistency_status = evaluate_verification_consistency(
        int(_sum_counter("verification_transitions_total")),
        int(_sum_counter("verification_reconciliation_repairs_total")),
    )

    slos = {}
    for s in [availability_status, latency_status, consistency_status]:
        slos[s.slo.name] = {
            "current": s.current,
            "target": s.slo.target,
            "healthy": s.healthy,
        }

    return {
        "status": overall,
        "checks": checks,
        "slos": slos,
    }


@router.get("/ready")
async def ready() -> Response:
    """Readiness probe: 200 when the ledger answers, else 503."""
    if await _ledger_check() == "degraded":
        logger.warning("Readiness check failed: ledger unreachable")
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
