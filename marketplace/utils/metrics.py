"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Inbound payment webhooks by outcome",
    ["provider", "outcome"],  # processed, unhandled, rejected, failed, error
)

payment_transitions_total = Counter(
    "payment_transitions_total",
    "Payment status transitions applied",
    ["provider", "status"],
)

commissions_recorded_total = Counter(
    "commissions_recorded_total",
    "Referral conversions recorded",
)

payouts_created_total = Counter(
    "payouts_created_total",
    "Aggregation outcomes per referrer",
    ["outcome"],  # created, below_minimum, already_exists
)

payouts_dispatched_total = Counter(
    "payouts_dispatched_total",
    "Payout dispatch results",
    ["provider", "status"],  # paid, failed
)

access_reconciled_total = Counter(
    "access_reconciled_total",
    "Product access grants repaired by the reconciliation sweep",
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
webhook_duration_seconds = Histogram(
    "webhook_duration_seconds",
    "Webhook processing duration",
    ["provider"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)

payout_provider_duration_seconds = Histogram(
    "payout_provider_duration_seconds",
    "External payout transfer duration",
    ["provider"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60],
)

# Gauges
bulk_payout_in_progress = Gauge(
    "bulk_payout_in_progress",
    "Currently running bulk payout batches",
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
