"""Stripe webhook parsing and the handlers that turn payment events into credits."""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import stripe
from django.conf import settings

from credits.models import CreditLedgerEntry

from .errors import IdempotencyError
from .ledger import claw_back_purchase, credit

logger = logging.getLogger(__name__)

AUTO_TOPUP_PACK_TYPE = "auto_topup"


class StripeConfigurationError(RuntimeError):
    """Raised when mandatory Stripe configuration is missing."""


class StripeServiceError(RuntimeError):
    """Raised when Stripe returns an operational error."""


class StripeWebhookSignatureError(StripeServiceError):
    """Raised when webhook signature validation fails."""


class WebhookProcessingError(Exception):
    """Raised when a webhook cannot be processed successfully."""


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a webhook handler invocation."""

    status: str
    detail: str = ""
    account_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    credits: int = 0

    PROCESSED = "processed"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"


def _configure_stripe() -> None:
    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")

    stripe.api_key = secret_key
    api_version = getattr(settings, "STRIPE_API_VERSION", None)
    if api_version:
        stripe.api_version = api_version


def parse_event(payload: str, sig_header: str, secret: Optional[str] = None) -> stripe.Event:
    """Validate and deserialize a Stripe webhook payload."""

    if not sig_header:
        raise StripeWebhookSignatureError("Stripe-Signature header is missing.")

    webhook_secret = secret or getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    if not webhook_secret:
        raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured.")

    try:
        return stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=webhook_secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise StripeWebhookSignatureError("Stripe webhook signature verification failed.") from exc
    except ValueError as exc:
        logger.error("Received malformed Stripe webhook payload: %s", exc)
        raise StripeServiceError("Malformed Stripe webhook payload.") from exc


def event_digest(event_data: Dict[str, Any]) -> str:
    """SHA256 of the event serialised with sorted keys."""

    canonical = json.dumps(event_data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def retrieve_subscription_metadata(subscription_id: str) -> Dict[str, Any]:
    """Fetch the metadata of a Stripe subscription."""

    if not subscription_id:
        raise ValueError("subscription_id is required.")

    _configure_stripe()
    try:
        subscription = stripe.Subscription.retrieve(subscription_id)
    except stripe.StripeError as exc:
        logger.error("Unable to retrieve Stripe subscription %s: %s", subscription_id, exc)
        raise StripeServiceError(f"Unable to retrieve subscription {subscription_id}.") from exc
    return dict(subscription.get("metadata") or {})


def dispatch_event(*, event_id: str, event_type: str, payload: Dict[str, Any]) -> HandlerResult:
    """Route a Stripe webhook event to its dedicated handler."""

    handler: Optional[Callable[..., HandlerResult]] = {
        "checkout.session.completed": _handle_checkout_session_completed,
        "invoice.paid": _handle_invoice_paid,
        "invoice.payment_succeeded": _handle_invoice_paid,
        "charge.refunded": _handle_charge_refunded,
    }.get(event_type)

    if handler is None:
        logger.info("Ignoring unsupported Stripe event type '%s'.", event_type)
        return HandlerResult(status=HandlerResult.IGNORED, detail="Unsupported event type")

    obj = (payload.get("data") or {}).get("object") or {}
    try:
        return handler(event_id=event_id, obj=obj)
    except IdempotencyError as exc:
        logger.info("Stripe event %s (%s) was already applied under key %s.", event_id, event_type, exc.key)
        return HandlerResult(
            status=HandlerResult.ALREADY_PROCESSED,
            detail="Credits already applied",
            idempotency_key=exc.key,
        )


def _handle_checkout_session_completed(*, event_id: str, obj: Dict[str, Any]) -> HandlerResult:
    metadata = obj.get("metadata") or {}
    if not metadata.get("credits") or not metadata.get("pack_type"):
        return HandlerResult(status=HandlerResult.IGNORED, detail="Checkout session is not a credit pack purchase")

    account_id = _require_account_id(metadata, "checkout session")
    credits = _parse_credits(metadata.get("credits"))
    session_id = obj.get("id")
    if not session_id:
        raise WebhookProcessingError("Checkout session id missing from event payload.")

    key = f"checkout:{session_id}"
    credit(
        account_id,
        credits,
        credit_type=CreditLedgerEntry.CreditType.PURCHASED,
        transaction_type=CreditLedgerEntry.TransactionType.PURCHASE,
        idempotency_key=key,
        stripe_session_id=session_id,
        description=f"Credit pack purchase: {credits} credits",
        actor="stripe",
    )
    logger.info("Granted %s purchased credits to account %s for session %s.", credits, account_id, session_id)
    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail="Credit pack purchase credited",
        account_id=str(account_id),
        idempotency_key=key,
        credits=credits,
    )


def _handle_invoice_paid(*, event_id: str, obj: Dict[str, Any]) -> HandlerResult:
    subscription_id = obj.get("subscription")
    if not subscription_id:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Invoice is not tied to a subscription")

    metadata = ((obj.get("subscription_details") or {}).get("metadata")) or {}
    if not metadata:
        metadata = retrieve_subscription_metadata(subscription_id)

    if metadata.get("pack_type") != AUTO_TOPUP_PACK_TYPE or not metadata.get("credits"):
        return HandlerResult(status=HandlerResult.IGNORED, detail="Subscription is not a credit auto top-up")

    account_id = _require_account_id(metadata, "subscription")
    credits = _parse_credits(metadata.get("credits"))
    invoice_id = obj.get("id")
    if not invoice_id:
        raise WebhookProcessingError("Invoice id missing from event payload.")

    key = f"invoice:{invoice_id}"
    credit(
        account_id,
        credits,
        credit_type=CreditLedgerEntry.CreditType.PURCHASED,
        transaction_type=CreditLedgerEntry.TransactionType.PURCHASE,
        idempotency_key=key,
        stripe_invoice_id=invoice_id,
        description=f"Credit subscription renewal: {credits} credits",
        actor="stripe",
    )
    logger.info("Granted %s auto top-up credits to account %s for invoice %s.", credits, account_id, invoice_id)
    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail="Auto top-up credited",
        account_id=str(account_id),
        idempotency_key=key,
        credits=credits,
    )


def _handle_charge_refunded(*, event_id: str, obj: Dict[str, Any]) -> HandlerResult:
    metadata = obj.get("metadata") or {}
    if not metadata.get("credits"):
        return HandlerResult(status=HandlerResult.IGNORED, detail="Charge is not a credit pack purchase")

    account_id = _require_account_id(metadata, "charge")
    credits = _parse_credits(metadata.get("credits"))
    charge_id = obj.get("id")
    if not charge_id:
        raise WebhookProcessingError("Charge id missing from event payload.")

    entry = claw_back_purchase(account_id, credits, charge_id=charge_id)
    if entry is None:
        return HandlerResult(
            status=HandlerResult.IGNORED,
            detail="No purchased credits left to claw back",
            account_id=str(account_id),
        )
    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail="Purchased credits clawed back",
        account_id=str(account_id),
        idempotency_key=entry.idempotency_key,
        credits=-entry.amount,
    )


def _require_account_id(metadata: Dict[str, Any], source: str) -> str:
    account_id = metadata.get("accountId") or metadata.get("account_id")
    if not account_id:
        raise WebhookProcessingError(f"Account metadata missing from {source}.")
    return account_id


def _parse_credits(value: Any) -> int:
    try:
        credits = int(value)
    except (TypeError, ValueError) as exc:
        raise WebhookProcessingError(f"Invalid credits value in metadata: {value!r}.") from exc
    if credits <= 0:
        raise WebhookProcessingError(f"Credits in metadata must be positive, got {credits}.")
    return credits
