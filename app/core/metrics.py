"""Application metrics using the Prometheus client library.

Every metric the service exports is defined here, in one inventory.
Modules import the metric they own and increment/observe it at the
point of action; nothing else registers collectors.

Naming: counters end in ``_total``, label values are low-cardinality
enums (never user ids or credential ids; those belong in logs).

WHAT TO ALERT ON
-----------------
  fee_resolver_degraded_total          > 0 over 5m → ledger reads failing,
                                         users are being quoted base fees
  entitlement_decisions_total{result="error"}
                                       > 0 → gate failing closed (503s)
  verification_reconciliation_repairs_total
                                       rising → dual writes diverging
  stale_verification_requests          high → reviewer backlog
  external_collaborator_failures_total rising → attestor / narrative down
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    # 5ms health checks ... 500ms p95 target ... 5s means the ledger is stuck
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

RATE_LIMIT_HITS = Counter(
    "rate_limit_hits_total",
    "Requests rejected by rate limiting (429s)",
    ["scope"],
)

# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

FEE_RESOLUTIONS = Counter(
    "fee_resolutions_total",
    "Fee quotes by the adjustment that decided the amount",
    ["adjustment"],  # role_override | custom_fee | promotion | none | unknown_action
)

FEE_RESOLVER_DEGRADED = Counter(
    "fee_resolver_degraded_total",
    "Fee quotes that fell back to the base fee because the ledger was unreadable",
)

ENTITLEMENT_DECISIONS = Counter(
    "entitlement_decisions_total",
    "Entitlement gate outcomes",
    ["feature", "result"],  # result: not_covered | unlimited | consumed | exhausted | error
)

CREDIT_DECISIONS = Counter(
    "credit_decisions_total",
    "Prepaid credit outcomes",
    ["credit_type", "result"],  # result: spent | empty | refunded | awarded | error
)

PAYMENT_OBLIGATIONS = Counter(
    "payment_obligations_total",
    "Payment obligations emitted to the payment collaborator",
    ["action_type"],
)

PAYMENT_COMPLETIONS = Counter(
    "payment_completions_total",
    "Payment completion callbacks by outcome",
    ["result"],  # applied | duplicate | failed | requires_refund
)

# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

VERIFICATION_TRANSITIONS = Counter(
    "verification_transitions_total",
    "Accepted verification state transitions",
    ["from_status", "to_status"],
)

VERIFICATION_CONFLICTS = Counter(
    "verification_conflicts_total",
    "Refused verification transitions",
    ["reason"],  # invalid_edge | open_request | concurrent_write
)

RECONCILIATION_REPAIRS = Counter(
    "verification_reconciliation_repairs_total",
    "Credential projections repaired from the request timeline",
)

STALE_VERIFICATION_REQUESTS = Gauge(
    "stale_verification_requests",
    "Pending verification requests older than the configured threshold",
)

# ---------------------------------------------------------------------------
# Collaborators and background work
# ---------------------------------------------------------------------------

COLLABORATOR_FAILURES = Counter(
    "external_collaborator_failures_total",
    "Failed or malformed calls to external collaborators",
    ["collaborator"],  # attestor | narrative
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],  # "verification_reconcile", "stale_verification_sweep"
)
