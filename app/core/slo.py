"""Service level objectives reported by /health.

  availability              non-5xx responses / all responses     ≥ 99.5%
  latency_p95               requests answered within 500ms        ≥ 95%
  verification_consistency  transitions needing no repair later   ≥ 99.9%

The consistency objective is the one specific to this service.  A
transition writes the request timeline and the credential projection in
one commit, so every repair the reconciler makes means the two drifted
apart anyway (a partial write on a degraded store, a manual edit).

``budget_remaining`` is in percentage points: with a 99.5% target and
99.8% measured, 0.3 points of error budget are left.  Everything here is
pure arithmetic; app/api/health.py feeds it Prometheus samples.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass

LATENCY_THRESHOLD_MS = 500.0


@dataclass(frozen=True, slots=True)
class SLODefinition:
    name: str
    description: str
    target: float  # percent
    window: str


@dataclass(frozen=True, slots=True)
class SLOStatus:
    slo: SLODefinition
    current: float
    budget_remaining: float
    healthy: bool


AVAILABILITY_SLO = SLODefinition(
    name="availability",
    description="Responses that were not 5xx",
    target=99.5,
    window="30d",
)

LATENCY_SLO = SLODefinition(
    name="latency_p95",
    description=f"Requests answered within {LATENCY_THRESHOLD_MS:.0f}ms",
    target=95.0,
    window="30d",
)

VERIFICATION_CONSISTENCY_SLO = SLODefinition(
    name="verification_consistency",
    description="Transitions whose credential projection needed no repair",
    target=99.9,
    window="30d",
)

ALL_SLOS = (AVAILABILITY_SLO, LATENCY_SLO, VERIFICATION_CONSISTENCY_SLO)


def _status(slo: SLODefinition, current: float) -> SLOStatus:
    return SLOStatus(
        slo=slo,
        current=round(current, 3),
        budget_remaining=round(current - slo.target, 3),
        healthy=current >= slo.target,
    )


def _good_fraction(total: int, bad: int, *, when_empty: float) -> float:
    if total == 0:
        return when_empty
    return max(0.0, (total - bad) / total * 100)


def evaluate_availability(total_requests: int, error_requests: int) -> SLOStatus:
    """10,000 requests with 10 errors → 99.9, healthy; with 100 → 99.0, breached."""
    return _status(
        AVAILABILITY_SLO, _good_fraction(total_requests, error_requests, when_empty=100.0)
    )


def evaluate_latency(p95_ms: float) -> SLOStatus:
    """Map a p95 onto "percent of requests under the threshold".

    At the threshold exactly 95% are fast enough.  Below it the value
    climbs linearly to 100 at 0ms; above it, it falls to 0 at twice the
    threshold.
    """
    if p95_ms <= LATENCY_THRESHOLD_MS:
        current = 95.0 + (LATENCY_THRESHOLD_MS - p95_ms) / LATENCY_THRESHOLD_MS * 5.0
    else:
        current = 95.0 - (p95_ms - LATENCY_THRESHOLD_MS) / LATENCY_THRESHOLD_MS * 95.0
    return _status(LATENCY_SLO, min(100.0, max(0.0, current)))


def evaluate_verification_consistency(transitions: int, repairs: int) -> SLOStatus:
    # The worker process reconciles without transitioning, so repairs
    # with no transitions is possible there, and counts as a breach.
    if transitions == 0:
        current = 100.0 if repairs == 0 else 0.0
    else:
        current = _good_fraction(transitions, repairs, when_empty=100.0)
    return _status(VERIFICATION_CONSISTENCY_SLO, current)


def estimate_p95_ms(cumulative_buckets: Mapping[float, float]) -> float:
    """p95 in ms from a Prometheus histogram's cumulative ``le`` buckets.

    Returns the upper bound of the first bucket holding 95% of the
    observations, which overestimates by at most one bucket width.  When
    only +Inf gets there, the largest finite bound is reported.  No
    observations → 0.
    """
    if not cumulative_buckets:
        return 0.0
    bounds = sorted(cumulative_buckets)
    total = cumulative_buckets[bounds[-1]]
    if total <= 0:
        return 0.0
    finite = [b for b in bounds if not math.isinf(b)]
    for bound in bounds:
        if cumulative_buckets[bound] >= 0.95 * total:
            if math.isinf(bound):
                break
            return bound * 1000
    return (finite[-1] if finite else 0.0) * 1000
