"""Guarded execution of priced features: check, debit, run, refund on failure."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from credits.observability.logging import log_credit_event
from credits.observability.metrics import (
    CREDIT_REFUND_FAILURE_COUNT,
    GUARDED_OPERATION_LATENCY,
    INSUFFICIENT_CREDITS_COUNT,
)

from .balances import get_balance
from .errors import InsufficientCreditsError
from .ledger import debit, refund_feature

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED = 402


@dataclass(frozen=True)
class CreditOperationResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[int] = None
    credits_debited: Optional[int] = None
    credits_remaining: Optional[int] = None

    def as_dict(self) -> dict:
        payload = {"success": self.success}
        for key in ("data", "error", "error_code", "credits_debited", "credits_remaining"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


def with_credits(
    *,
    account_id,
    feature_type,
    credit_cost: int,
    idempotency_key: str,
    operation: Callable[[], Any],
    user_id: Optional[str] = None,
    description: str = "",
    feature_metadata: Any = None,
) -> CreditOperationResult:
    """Charge ``credit_cost`` for ``operation`` and refund it if the operation raises.

    Insufficient credits are reported as a 402 result without running the
    operation. Any exception raised by ``operation`` is re-raised after the
    compensating refund has been attempted; a failing refund is logged and
    never replaces the original error.
    """

    if credit_cost <= 0:
        raise ValueError("Credit cost must be a positive integer.")
    feature_label = str(getattr(feature_type, "value", feature_type))
    actor = str(user_id) if user_id else ""

    available = get_balance(account_id).total_credits
    if available < credit_cost:
        return _insufficient(account_id, feature_label, credit_cost, available)

    try:
        debit(
            account_id,
            credit_cost,
            feature_type=feature_type,
            feature_metadata=feature_metadata,
            idempotency_key=idempotency_key,
            description=description or f"{feature_label} operation",
            actor=actor,
        )
    except InsufficientCreditsError as exc:
        return _insufficient(account_id, feature_label, credit_cost, exc.available)

    started = time.monotonic()
    try:
        data = operation()
    except Exception:
        GUARDED_OPERATION_LATENCY.labels(feature_type=feature_label, outcome="failed").observe(
            time.monotonic() - started
        )
        _compensate(
            account_id,
            credit_cost,
            idempotency_key,
            feature_type=feature_type,
            feature_metadata=feature_metadata,
            actor=actor,
        )
        raise

    GUARDED_OPERATION_LATENCY.labels(feature_type=feature_label, outcome="succeeded").observe(
        time.monotonic() - started
    )
    return CreditOperationResult(
        success=True,
        data=data,
        credits_debited=credit_cost,
        credits_remaining=get_balance(account_id).total_credits,
    )


def _insufficient(account_id, feature_label: str, required: int, available: int) -> CreditOperationResult:
    INSUFFICIENT_CREDITS_COUNT.labels(feature_type=feature_label).inc()
    log_credit_event(
        message="credits.insufficient",
        account_id=account_id,
        extra={"feature_type": feature_label, "required": required, "available": available},
    )
    return CreditOperationResult(
        success=False,
        error=f"Insufficient credits: {required} required, {available} available.",
        error_code=PAYMENT_REQUIRED,
        credits_remaining=available,
    )


def _compensate(account_id, amount: int, idempotency_key: str, *, feature_type, feature_metadata, actor: str) -> None:
    try:
        refund_feature(
            account_id,
            amount,
            idempotency_key,
            feature_type=feature_type,
            feature_metadata=feature_metadata,
            actor=actor,
        )
    except Exception:
        # The operation error is already propagating; a refund failure never replaces it
        CREDIT_REFUND_FAILURE_COUNT.labels(feature_type=str(getattr(feature_type, "value", feature_type))).inc()
        logger.exception(
            "Refund of %s credits for failed operation %s on account %s did not complete",
            amount,
            idempotency_key,
            account_id,
        )


class AllSubChecksFailed(Exception):
    """Raised when every sub-check of a multi-check operation failed."""

    def __init__(self, failures: Mapping[str, BaseException]):
        self.failures = dict(failures)
        names = ", ".join(sorted(self.failures))
        super().__init__(f"All sub-checks failed: {names}")


@dataclass
class SubCheckReport:
    results: Dict[str, Any] = field(default_factory=dict)
    failures: Dict[str, BaseException] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.results) and bool(self.failures)

    def as_metadata(self) -> dict:
        return {
            "succeeded": sorted(self.results),
            "failed": {name: str(exc) for name, exc in sorted(self.failures.items())},
        }


def run_sub_checks(checks: Mapping[str, Callable[[], Any]]) -> SubCheckReport:
    """Run independent sub-checks charged as one operation.

    Individual failures are recorded rather than raised; the charge is kept
    as long as one check succeeded. ``AllSubChecksFailed`` is raised only
    when every check failed, which is what makes ``with_credits`` refund.
    """

    report = SubCheckReport()
    for name, check in checks.items():
        try:
            report.results[name] = check()
        except Exception as exc:
            logger.warning("Sub-check %s failed: %s", name, exc, exc_info=True)
            report.failures[name] = exc

    if report.failures and not report.results:
        raise AllSubChecksFailed(report.failures)
    return report
