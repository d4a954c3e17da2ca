"""Celery tasks for credit expiry, monthly grants, reconciliation and Stripe events."""
from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task
from django.db import transaction
from django.utils import timezone

from credits.models import CreditBalance, CreditWebhookEvent
from credits.services.audit import accounts_with_balances, reconcile_account
from credits.services.errors import CreditStorageError, IdempotencyError
from credits.services.ledger import expire_included_credits, grant_monthly_credits
from credits.services.stripe_events import (
    HandlerResult,
    StripeServiceError,
    WebhookProcessingError,
    dispatch_event,
    event_digest,
)

logger = logging.getLogger(__name__)


@shared_task(queue="credits")
def expire_included_credits_sweep() -> Dict[str, int]:
    """Expire the included pool of every balance past its expiry."""

    now = timezone.now()
    account_ids = list(
        CreditBalance.objects.filter(
            included_credits__gt=0,
            included_credits_expire_at__isnull=False,
            included_credits_expire_at__lte=now,
        ).values_list("account_id", flat=True)
    )

    stats = {"expired": 0, "skipped": 0, "failed": 0}
    for account_id in account_ids:
        try:
            entry = expire_included_credits(account_id, now=now)
        except CreditStorageError:
            logger.exception("Failed to expire included credits for account %s", account_id)
            stats["failed"] += 1
            continue
        if entry is None:
            stats["skipped"] += 1
        else:
            stats["expired"] += 1

    logger.info("Included credit expiry sweep finished: %s", stats)
    return stats


@shared_task(bind=True, queue="credits", autoretry_for=(CreditStorageError,), retry_backoff=True, max_retries=3)
def grant_monthly_credits_task(self, account_id: str, tier: str) -> Dict[str, Any]:
    """Grant this month's included allowance; a repeat run in the same month is a no-op."""

    try:
        entry = grant_monthly_credits(account_id, tier)
    except IdempotencyError as exc:
        logger.info("Monthly credits already granted to account %s (%s).", account_id, exc.key)
        return {"status": "already_granted", "account_id": str(account_id)}

    if entry is None:
        return {"status": "no_allowance", "account_id": str(account_id)}
    return {"status": "granted", "account_id": str(account_id), "credits": entry.amount}


@shared_task(queue="credits")
def reconcile_balances() -> Dict[str, int]:
    """Compare every cached balance with its ledger sum and report drift."""

    stats = {"checked": 0, "drifted": 0}
    for account_id in accounts_with_balances().iterator():
        result = reconcile_account(account_id)
        stats["checked"] += 1
        if not result.is_consistent:
            stats["drifted"] += 1

    if stats["drifted"]:
        logger.error("Credit reconciliation found %s drifted balances out of %s.", stats["drifted"], stats["checked"])
    else:
        logger.info("Credit reconciliation checked %s balances, all consistent.", stats["checked"])
    return stats


@shared_task(
    bind=True,
    queue="credits",
    autoretry_for=(CreditStorageError, StripeServiceError),
    retry_backoff=True,
    max_retries=5,
)
def process_stripe_event_async(self, event_data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a Stripe event to the ledger; an event id that was already handled is skipped."""

    event_id = event_data.get("id") or ""
    event_type = event_data.get("type") or ""

    receipt, handled = CreditWebhookEvent.objects.claim(event_id, event_type, event_digest(event_data))
    if handled:
        logger.info("Stripe event %s (%s) was handled earlier with status %s", event_id, event_type, receipt.status)
        return {"status": "skipped"}

    try:
        with transaction.atomic():
            result = dispatch_event(event_id=event_id, event_type=event_type, payload=event_data)
    except WebhookProcessingError as exc:
        logger.warning("Stripe event %s (%s) cannot be applied: %s", event_id, event_type, exc)
        if receipt:
            receipt.mark_failed(str(exc))
        return {"status": "failed", "detail": str(exc)}
    except (CreditStorageError, StripeServiceError) as exc:
        logger.exception("Stripe event %s (%s) failed; retrying", event_id, event_type)
        if receipt:
            receipt.mark_failed(str(exc))
        raise

    if receipt:
        ignored = result.status == HandlerResult.IGNORED
        receipt.mark_handled(CreditWebhookEvent.Status.IGNORED if ignored else CreditWebhookEvent.Status.PROCESSED)
    logger.info("Stripe event %s (%s): %s", event_id, event_type, result.detail or result.status)
    return {"status": result.status, "detail": result.detail}
