import uuid
from datetime import datetime, timezone as dt_timezone
from unittest import mock

import pytest

from credits.models import CreditBalance, CreditLedgerEntry, CreditWebhookEvent, TierCredits
from credits.services.balances import get_balance
from credits.services.ledger import credit
from credits.tasks import (
    expire_included_credits_sweep,
    grant_monthly_credits_task,
    process_stripe_event_async,
    reconcile_balances,
)

TransactionType = CreditLedgerEntry.TransactionType


def _checkout_event(event_id, account_id, credits="300"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "metadata": {"accountId": account_id, "credits": credits, "pack_type": "growth"},
            }
        },
    }


@pytest.mark.django_db
def test_process_stripe_event_applies_credits_once():
    account_id = str(uuid.uuid4())
    event = _checkout_event("evt_task_1", account_id)

    first = process_stripe_event_async(event)
    second = process_stripe_event_async(event)

    assert first["status"] == "processed"
    assert second == {"status": "skipped"}
    assert get_balance(account_id).purchased_credits == 300
    log_entry = CreditWebhookEvent.objects.get(event_id="evt_task_1")
    assert log_entry.handled is True
    assert log_entry.status == CreditWebhookEvent.Status.PROCESSED
    assert log_entry.processed_at is not None


@pytest.mark.django_db
def test_process_stripe_event_marks_ignored_events():
    event = {"id": "evt_task_2", "type": "customer.updated", "data": {"object": {}}}

    result = process_stripe_event_async(event)

    assert result["status"] == "ignored"
    assert CreditWebhookEvent.objects.get(event_id="evt_task_2").status == CreditWebhookEvent.Status.IGNORED


@pytest.mark.django_db
def test_process_stripe_event_records_processing_failures():
    event = _checkout_event("evt_task_3", str(uuid.uuid4()), credits="-5")

    result = process_stripe_event_async(event)

    assert result["status"] == "failed"
    log_entry = CreditWebhookEvent.objects.get(event_id="evt_task_3")
    assert log_entry.status == CreditWebhookEvent.Status.FAILED
    assert log_entry.handled is False
    assert "positive" in log_entry.last_error


@pytest.mark.django_db
def test_expire_sweep_only_touches_lapsed_pools():
    lapsed, current = uuid.uuid4(), uuid.uuid4()
    credit(
        lapsed,
        50,
        credit_type="included",
        transaction_type=TransactionType.MONTHLY_GRANT,
        now=datetime(2024, 1, 10, tzinfo=dt_timezone.utc),
    )
    credit(current, 50, credit_type="included", transaction_type=TransactionType.MONTHLY_GRANT)
    credit(current, 7, credit_type="purchased", transaction_type=TransactionType.PURCHASE)

    stats = expire_included_credits_sweep()

    assert stats == {"expired": 1, "skipped": 0, "failed": 0}
    assert get_balance(lapsed).included_credits == 0
    assert get_balance(current).included_credits == 50
    expiry = CreditLedgerEntry.objects.get(account_id=lapsed, transaction_type=TransactionType.MONTHLY_EXPIRE)
    assert expiry.amount == -50


@pytest.mark.django_db
def test_grant_monthly_credits_task_is_idempotent_within_a_month():
    TierCredits.objects.update_or_create(tier="task-tier", defaults={"monthly_credits": 75})
    account_id = str(uuid.uuid4())

    first = grant_monthly_credits_task(account_id, "task-tier")
    second = grant_monthly_credits_task(account_id, "task-tier")

    assert first == {"status": "granted", "account_id": account_id, "credits": 75}
    assert second["status"] == "already_granted"
    assert get_balance(account_id).included_credits == 75


@pytest.mark.django_db
def test_grant_monthly_credits_task_skips_tiers_without_allowance():
    result = grant_monthly_credits_task(str(uuid.uuid4()), "no-such-tier")

    assert result["status"] == "no_allowance"


@pytest.mark.django_db
def test_reconcile_balances_counts_drifted_accounts():
    healthy, drifted = uuid.uuid4(), uuid.uuid4()
    credit(healthy, 10, credit_type="purchased", transaction_type=TransactionType.PURCHASE)
    credit(drifted, 10, credit_type="purchased", transaction_type=TransactionType.PURCHASE)
    CreditBalance.objects.filter(account_id=drifted).update(purchased_credits=25)

    with mock.patch("credits.tasks.logger") as logger:
        stats = reconcile_balances()

    assert stats == {"checked": 2, "drifted": 1}
    logger.error.assert_called_once()
