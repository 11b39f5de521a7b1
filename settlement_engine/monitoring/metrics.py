"""
Prometheus metrics for settlement and payout monitoring.

Tracks:
- Weekly aggregation runs and settlement row changes
- Settlement lifecycle transitions
- Payout initiations by outcome
- Payout gateway requests, errors and latency
- Reconciliation results
"""
from prometheus_client import Counter, Gauge, Histogram

# Aggregation metrics
week_upserts_total = Counter(
    "settlement_week_upserts_total",
    "Total weekly aggregation runs",
    ["status"],  # success, failed
)

settlement_rows_total = Counter(
    "settlement_rows_total",
    "Settlement rows touched by weekly aggregation",
    ["action"],  # created, recomputed, frozen
)

settlement_order_links_total = Counter(
    "settlement_order_links_total",
    "Order links inserted by weekly aggregation",
)

week_upsert_duration_seconds = Histogram(
    "settlement_week_upsert_duration_seconds",
    "Weekly aggregation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# Lifecycle metrics
settlement_transitions_total = Counter(
    "settlement_transitions_total",
    "Settlement status transitions",
    ["from_status", "to_status"],
)

payout_initiations_total = Counter(
    "payout_initiations_total",
    "Payout initiation attempts by outcome",
    ["outcome"],  # processing, retryable, ambiguous, rejected
)

payout_amount_minor_units = Histogram(
    "payout_amount_minor_units",
    "Requested payout amounts in minor units",
    buckets=(10_000, 100_000, 500_000, 1_000_000, 5_000_000, 10_000_000, 50_000_000),
)

# Gateway metrics
gateway_requests_total = Counter(
    "payout_gateway_requests_total",
    "Total payout gateway requests",
    ["operation", "status"],
)

gateway_errors_total = Counter(
    "payout_gateway_errors_total",
    "Total payout gateway errors",
    ["error_type"],  # transient, permanent, rate_limit, ambiguous
)

gateway_duration_seconds = Histogram(
    "payout_gateway_duration_seconds",
    "Payout gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

gateway_circuit_breaker_state = Gauge(
    "payout_gateway_circuit_breaker_state",
    "Payout gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Reconciliation metrics
reconciliation_results_total = Counter(
    "settlement_reconciliation_results_total",
    "Ambiguous payout attempts resolved by reconciliation",
    ["result"],  # payout_found, cleared, unresolved
)

settlements_awaiting_reconciliation = Gauge(
    "settlements_awaiting_reconciliation",
    "Settlements flagged for manual or automatic reconciliation",
)
