import uuid
from unittest import mock

import pytest
import stripe

from credits.models import CreditLedgerEntry
from credits.services.balances import get_balance
from credits.services.ledger import credit
from credits.services.stripe_events import (
    HandlerResult,
    StripeConfigurationError,
    StripeServiceError,
    StripeWebhookSignatureError,
    WebhookProcessingError,
    dispatch_event,
    parse_event,
)


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.mark.django_db
def test_checkout_session_credits_purchased_pool():
    account_id = str(uuid.uuid4())
    payload = _event(
        "checkout.session.completed",
        {"id": "cs_test_1", "metadata": {"accountId": account_id, "credits": "500", "pack_type": "growth"}},
    )

    result = dispatch_event(event_id="evt_1", event_type="checkout.session.completed", payload=payload)

    assert result.status == HandlerResult.PROCESSED
    assert result.idempotency_key == "checkout:cs_test_1"
    assert result.credits == 500
    entry = CreditLedgerEntry.objects.get(idempotency_key="checkout:cs_test_1")
    assert entry.stripe_session_id == "cs_test_1"
    assert entry.transaction_type == CreditLedgerEntry.TransactionType.PURCHASE
    assert entry.description == "Credit pack purchase: 500 credits"
    assert get_balance(account_id).purchased_credits == 500


@pytest.mark.django_db
def test_replayed_checkout_session_reports_already_processed():
    account_id = str(uuid.uuid4())
    payload = _event(
        "checkout.session.completed",
        {"id": "cs_test_2", "metadata": {"accountId": account_id, "credits": "100", "pack_type": "starter"}},
    )
    dispatch_event(event_id="evt_2", event_type="checkout.session.completed", payload=payload)

    result = dispatch_event(event_id="evt_2b", event_type="checkout.session.completed", payload=payload)

    assert result.status == HandlerResult.ALREADY_PROCESSED
    assert get_balance(account_id).purchased_credits == 100


@pytest.mark.django_db
def test_checkout_session_without_credit_metadata_is_ignored():
    payload = _event("checkout.session.completed", {"id": "cs_plan", "metadata": {"plan": "builder"}})

    result = dispatch_event(event_id="evt_3", event_type="checkout.session.completed", payload=payload)

    assert result.status == HandlerResult.IGNORED
    assert not CreditLedgerEntry.objects.filter(stripe_session_id="cs_plan").exists()


@pytest.mark.django_db
def test_checkout_session_without_account_raises_processing_error():
    payload = _event("checkout.session.completed", {"id": "cs_x", "metadata": {"credits": "10", "pack_type": "starter"}})

    with pytest.raises(WebhookProcessingError):
        dispatch_event(event_id="evt_4", event_type="checkout.session.completed", payload=payload)


@pytest.mark.django_db
def test_checkout_session_with_invalid_credits_raises_processing_error():
    payload = _event(
        "checkout.session.completed",
        {"id": "cs_y", "metadata": {"accountId": str(uuid.uuid4()), "credits": "lots", "pack_type": "starter"}},
    )

    with pytest.raises(WebhookProcessingError):
        dispatch_event(event_id="evt_5", event_type="checkout.session.completed", payload=payload)


@pytest.mark.django_db
def test_auto_topup_invoice_uses_embedded_subscription_metadata():
    account_id = str(uuid.uuid4())
    payload = _event(
        "invoice.payment_succeeded",
        {
            "id": "in_1",
            "subscription": "sub_1",
            "subscription_details": {
                "metadata": {"accountId": account_id, "credits": "100", "pack_type": "auto_topup"},
            },
        },
    )

    with mock.patch("credits.services.stripe_events.retrieve_subscription_metadata") as retrieve:
        result = dispatch_event(event_id="evt_6", event_type="invoice.payment_succeeded", payload=payload)

    retrieve.assert_not_called()
    assert result.status == HandlerResult.PROCESSED
    entry = CreditLedgerEntry.objects.get(idempotency_key="invoice:in_1")
    assert entry.stripe_invoice_id == "in_1"
    assert get_balance(account_id).purchased_credits == 100


@pytest.mark.django_db
def test_auto_topup_invoice_fetches_subscription_metadata_when_missing():
    account_id = str(uuid.uuid4())
    payload = _event("invoice.paid", {"id": "in_2", "subscription": "sub_2"})
    metadata = {"accountId": account_id, "credits": "250", "pack_type": "auto_topup"}

    with mock.patch("credits.services.stripe_events.retrieve_subscription_metadata", return_value=metadata) as retrieve:
        result = dispatch_event(event_id="evt_7", event_type="invoice.paid", payload=payload)

    retrieve.assert_called_once_with("sub_2")
    assert result.credits == 250
    assert get_balance(account_id).purchased_credits == 250


@pytest.mark.django_db
def test_invoice_for_other_subscriptions_is_ignored():
    payload = _event("invoice.paid", {"id": "in_3", "subscription": "sub_3"})

    with mock.patch(
        "credits.services.stripe_events.retrieve_subscription_metadata",
        return_value={"plan": "builder"},
    ):
        result = dispatch_event(event_id="evt_8", event_type="invoice.paid", payload=payload)

    assert result.status == HandlerResult.IGNORED


@pytest.mark.django_db
def test_charge_refund_claws_back_purchased_credits():
    account_id = str(uuid.uuid4())
    credit(account_id, 60, credit_type="purchased", transaction_type="purchase")
    credit(account_id, 10, credit_type="included", transaction_type="monthly_grant")
    payload = _event("charge.refunded", {"id": "ch_1", "metadata": {"accountId": account_id, "credits": "100"}})

    result = dispatch_event(event_id="evt_9", event_type="charge.refunded", payload=payload)

    assert result.status == HandlerResult.PROCESSED
    assert result.credits == 60
    balance = get_balance(account_id)
    assert (balance.included_credits, balance.purchased_credits) == (10, 0)
    entry = CreditLedgerEntry.objects.get(idempotency_key="refund:ch_1")
    assert entry.stripe_charge_id == "ch_1"
    assert entry.transaction_type == CreditLedgerEntry.TransactionType.REFUND


@pytest.mark.django_db
def test_unsupported_event_is_ignored():
    result = dispatch_event(event_id="evt_10", event_type="customer.created", payload=_event("customer.created", {}))

    assert result.status == HandlerResult.IGNORED


def test_parse_event_requires_signature_header():
    with pytest.raises(StripeWebhookSignatureError):
        parse_event(payload="{}", sig_header="")


def test_parse_event_requires_webhook_secret(settings):
    settings.STRIPE_WEBHOOK_SECRET = ""

    with pytest.raises(StripeConfigurationError):
        parse_event(payload="{}", sig_header="t=1,v1=abc")


def test_parse_event_translates_signature_failure(settings):
    settings.STRIPE_WEBHOOK_SECRET = "whsec_test"
    error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")

    with mock.patch("credits.services.stripe_events.stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(StripeWebhookSignatureError):
            parse_event(payload="{}", sig_header="t=1,v1=abc")


def test_parse_event_translates_malformed_payload(settings):
    settings.STRIPE_WEBHOOK_SECRET = "whsec_test"

    with mock.patch("credits.services.stripe_events.stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
        with pytest.raises(StripeServiceError):
            parse_event(payload="not json", sig_header="t=1,v1=abc")
