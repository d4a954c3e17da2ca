"""Prometheus metrics helpers for the credit ledger."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

CREDIT_DEBIT_COUNT = Counter(
    "credits_debit_total",
    "Number of successful credit debits",
    labelnames=("feature_type",),
)

CREDITS_DEBITED = Counter(
    "credits_debited_total",
    "Credits consumed by feature debits",
    labelnames=("feature_type",),
)

CREDIT_REFUND_COUNT = Counter(
    "credits_feature_refund_total",
    "Number of compensating feature refunds",
    labelnames=("feature_type",),
)

CREDIT_REFUND_FAILURE_COUNT = Counter(
    "credits_feature_refund_failure_total",
    "Compensating refunds that could not be written",
    labelnames=("feature_type",),
)

INSUFFICIENT_CREDITS_COUNT = Counter(
    "credits_insufficient_total",
    "Operations rejected for insufficient credits",
    labelnames=("feature_type",),
)

GUARDED_OPERATION_LATENCY = Histogram(
    "credits_guarded_operation_duration_seconds",
    "Duration of guarded feature operations",
    labelnames=("feature_type", "outcome"),
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)
