import uuid
from datetime import datetime, timezone as dt_timezone
from unittest import mock

import pytest
from django.core.exceptions import ValidationError
from django.db import connection

from credits.models import CreditBalance, CreditLedgerEntry, FeatureType, TierCredits
from credits.services.audit import reconcile_account
from credits.services.balances import ensure_balance_exists, get_balance
from credits.services.features import GeoGridMetadata
from credits.services.ledger import (
    IdempotencyError,
    MAX_OPERATION_KEY_LENGTH,
    InsufficientCreditsError,
    claw_back_purchase,
    credit,
    debit,
    expire_included_credits,
    first_day_of_next_month,
    grant_monthly_credits,
    manual_adjust,
    refund_feature,
)

CreditType = CreditLedgerEntry.CreditType
TransactionType = CreditLedgerEntry.TransactionType


def _fund(account_id, *, included=0, purchased=0):
    if included:
        credit(account_id, included, credit_type=CreditType.INCLUDED, transaction_type=TransactionType.MONTHLY_GRANT)
    if purchased:
        credit(account_id, purchased, credit_type=CreditType.PURCHASED, transaction_type=TransactionType.PURCHASE)


@pytest.mark.django_db
def test_get_balance_returns_zero_for_unknown_account_without_creating_row():
    account_id = uuid.uuid4()

    balance = get_balance(account_id)

    assert balance.included_credits == 0
    assert balance.purchased_credits == 0
    assert balance.total_credits == 0
    assert not CreditBalance.objects.filter(account_id=account_id).exists()


@pytest.mark.django_db
def test_ensure_balance_exists_is_idempotent():
    account_id = uuid.uuid4()

    ensure_balance_exists(account_id)
    ensure_balance_exists(account_id)

    assert CreditBalance.objects.filter(account_id=account_id).count() == 1
    assert get_balance(account_id).total_credits == 0


@pytest.mark.django_db
def test_debit_splits_across_pools_with_suffixed_keys():
    account_id = uuid.uuid4()
    _fund(account_id, included=3, purchased=10)

    entries = debit(account_id, 5, feature_type=FeatureType.GEO_GRID, idempotency_key="K")

    assert [(e.idempotency_key, e.credit_type, e.amount) for e in entries] == [
        ("K:included", CreditType.INCLUDED, -3),
        ("K:purchased", CreditType.PURCHASED, -2),
    ]
    assert [e.balance_after for e in entries] == [10, 8]
    balance = get_balance(account_id)
    assert balance.included_credits == 0
    assert balance.purchased_credits == 8


@pytest.mark.django_db
def test_debit_touching_one_pool_uses_key_verbatim():
    account_id = uuid.uuid4()
    _fund(account_id, included=10, purchased=10)

    entries = debit(account_id, 4, feature_type="rank_tracking", idempotency_key="rank:abc")

    assert len(entries) == 1
    assert entries[0].idempotency_key == "rank:abc"
    assert entries[0].credit_type == CreditType.INCLUDED
    balance = get_balance(account_id)
    assert (balance.included_credits, balance.purchased_credits) == (6, 10)


@pytest.mark.django_db
def test_debit_replay_raises_idempotency_error_and_keeps_balance():
    account_id = uuid.uuid4()
    _fund(account_id, purchased=20)
    debit(account_id, 5, feature_type=FeatureType.BACKLINKS, idempotency_key="backlinks:1")

    with pytest.raises(IdempotencyError) as exc:
        debit(account_id, 5, feature_type=FeatureType.BACKLINKS, idempotency_key="backlinks:1")

    assert exc.value.key == "backlinks:1"
    assert get_balance(account_id).total_credits == 15


@pytest.mark.django_db
def test_debit_more_than_available_writes_nothing():
    account_id = uuid.uuid4()
    _fund(account_id, included=2, purchased=1)
    rows_before = CreditLedgerEntry.objects.for_account(account_id).count()

    with pytest.raises(InsufficientCreditsError) as exc:
        debit(account_id, 5, feature_type=FeatureType.GEO_GRID, idempotency_key="geo:1")

    assert exc.value.required == 5
    assert exc.value.available == 3
    assert CreditLedgerEntry.objects.for_account(account_id).count() == rows_before
    assert get_balance(account_id).total_credits == 3


@pytest.mark.parametrize("amount", [0, -3])
@pytest.mark.django_db
def test_debit_rejects_non_positive_amounts(amount):
    with pytest.raises(ValueError):
        debit(uuid.uuid4(), amount, feature_type=FeatureType.GEO_GRID, idempotency_key="x")


@pytest.mark.django_db
def test_debit_requires_idempotency_key():
    with pytest.raises(ValueError):
        debit(uuid.uuid4(), 1, feature_type=FeatureType.GEO_GRID, idempotency_key="")


@pytest.mark.django_db
def test_debit_stores_dataclass_metadata_as_json():
    account_id = uuid.uuid4()
    _fund(account_id, purchased=50)

    entries = debit(
        account_id,
        45,
        feature_type=FeatureType.GEO_GRID,
        feature_metadata=GeoGridMetadata(grid_size=5, keyword_count=5),
        idempotency_key="geo:meta",
    )

    assert entries[0].feature_metadata == {"grid_size": 5, "keyword_count": 5, "location_id": None}
    assert entries[0].feature_type == FeatureType.GEO_GRID


@pytest.mark.django_db
def test_caller_keys_with_colons_do_not_collide_with_derived_parts():
    account_id = uuid.uuid4()
    _fund(account_id, included=3, purchased=10)
    debit(account_id, 5, feature_type=FeatureType.GEO_GRID, idempotency_key="K")

    entries = debit(account_id, 1, feature_type=FeatureType.GEO_GRID, idempotency_key="K:included")

    assert entries[0].operation_key == "K:included"
    assert get_balance(account_id).total_credits == 7


@pytest.mark.django_db
def test_monthly_grant_sets_expiry_to_first_of_next_month():
    account_id = uuid.uuid4()
    now = datetime(2024, 12, 15, 10, 30, tzinfo=dt_timezone.utc)

    credit(
        account_id,
        100,
        credit_type=CreditType.INCLUDED,
        transaction_type=TransactionType.MONTHLY_GRANT,
        now=now,
    )

    balance = get_balance(account_id)
    assert balance.included_credits == 100
    assert balance.included_credits_expire_at == datetime(2025, 1, 1, tzinfo=dt_timezone.utc)
    assert balance.last_monthly_grant_at == now


def test_first_day_of_next_month_mid_year():
    now = datetime(2024, 2, 29, 23, 59, tzinfo=dt_timezone.utc)
    assert first_day_of_next_month(now) == datetime(2024, 3, 1, tzinfo=dt_timezone.utc)


@pytest.mark.django_db
def test_purchase_credit_leaves_expiry_untouched():
    account_id = uuid.uuid4()

    entry = credit(
        account_id,
        50,
        credit_type=CreditType.PURCHASED,
        transaction_type=TransactionType.PURCHASE,
        idempotency_key="checkout:cs_1",
        stripe_session_id="cs_1",
    )

    balance = get_balance(account_id)
    assert entry.balance_after == 50
    assert entry.stripe_session_id == "cs_1"
    assert balance.purchased_credits == 50
    assert balance.included_credits_expire_at is None


@pytest.mark.django_db
def test_credit_with_reused_key_raises_idempotency_error():
    account_id = uuid.uuid4()
    credit(account_id, 10, credit_type="purchased", transaction_type="promo_grant", idempotency_key="promo:spring")

    with pytest.raises(IdempotencyError):
        credit(account_id, 10, credit_type="purchased", transaction_type="promo_grant", idempotency_key="promo:spring")

    assert get_balance(account_id).purchased_credits == 10


@pytest.mark.django_db
def test_refund_feature_lands_in_purchased_pool_once():
    account_id = uuid.uuid4()
    _fund(account_id, included=10)
    debit(account_id, 5, feature_type=FeatureType.LLM_VISIBILITY, idempotency_key="llm:1")

    entry = refund_feature(account_id, 5, "llm:1", feature_type=FeatureType.LLM_VISIBILITY)

    assert entry.idempotency_key == "llm:1:refund"
    assert entry.transaction_type == TransactionType.FEATURE_REFUND
    assert entry.credit_type == CreditType.PURCHASED
    assert entry.description == "Refund for failed llm_visibility operation"

    with pytest.raises(IdempotencyError) as exc:
        refund_feature(account_id, 5, "llm:1", feature_type=FeatureType.LLM_VISIBILITY)

    assert exc.value.key == "llm:1:refund"
    balance = get_balance(account_id)
    assert (balance.included_credits, balance.purchased_credits) == (5, 5)


@pytest.mark.django_db
def test_debit_after_refund_of_same_key_is_still_a_replay():
    account_id = uuid.uuid4()
    _fund(account_id, purchased=10)
    debit(account_id, 2, feature_type=FeatureType.RSS_FEEDS, idempotency_key="rss:1")
    refund_feature(account_id, 2, "rss:1", feature_type=FeatureType.RSS_FEEDS)

    with pytest.raises(IdempotencyError):
        debit(account_id, 2, feature_type=FeatureType.RSS_FEEDS, idempotency_key="rss:1")


@pytest.mark.django_db
def test_grant_monthly_credits_expires_leftover_then_grants_allowance():
    TierCredits.objects.update_or_create(tier="test-tier", defaults={"monthly_credits": 40})
    account_id = uuid.uuid4()
    _fund(account_id, included=7, purchased=3)
    now = datetime(2030, 5, 2, tzinfo=dt_timezone.utc)

    entry = grant_monthly_credits(account_id, "test-tier", now=now)

    assert entry.idempotency_key == f"monthly_grant:{account_id}:2030-05"
    expired = CreditLedgerEntry.objects.for_account(account_id).get(transaction_type=TransactionType.MONTHLY_EXPIRE)
    assert expired.amount == -7
    balance = get_balance(account_id)
    assert (balance.included_credits, balance.purchased_credits) == (40, 3)
    assert balance.included_credits_expire_at == datetime(2030, 6, 1, tzinfo=dt_timezone.utc)

    with pytest.raises(IdempotencyError):
        grant_monthly_credits(account_id, "test-tier", now=now)
    assert get_balance(account_id).included_credits == 40


@pytest.mark.django_db
def test_grant_monthly_credits_for_unknown_tier_grants_nothing():
    account_id = uuid.uuid4()

    assert grant_monthly_credits(account_id, "no-such-tier") is None
    assert get_balance(account_id).total_credits == 0


@pytest.mark.django_db
def test_expire_included_credits_only_after_expiry():
    account_id = uuid.uuid4()
    granted_at = datetime(2030, 1, 10, tzinfo=dt_timezone.utc)
    credit(
        account_id,
        25,
        credit_type=CreditType.INCLUDED,
        transaction_type=TransactionType.MONTHLY_GRANT,
        now=granted_at,
    )

    assert expire_included_credits(account_id, now=datetime(2030, 1, 31, tzinfo=dt_timezone.utc)) is None

    entry = expire_included_credits(account_id, now=datetime(2030, 2, 1, 0, 5, tzinfo=dt_timezone.utc))

    assert entry.amount == -25
    assert entry.transaction_type == TransactionType.MONTHLY_EXPIRE
    assert get_balance(account_id).included_credits == 0
    assert expire_included_credits(account_id, now=datetime(2030, 2, 2, tzinfo=dt_timezone.utc)) is None


@pytest.mark.django_db
def test_claw_back_purchase_never_goes_below_zero():
    account_id = uuid.uuid4()
    _fund(account_id, purchased=30)
    debit(account_id, 25, feature_type=FeatureType.BACKLINKS, idempotency_key="bl:1")

    entry = claw_back_purchase(account_id, 30, charge_id="ch_1")

    assert entry.amount == -5
    assert entry.idempotency_key == "refund:ch_1"
    assert entry.stripe_charge_id == "ch_1"
    assert get_balance(account_id).purchased_credits == 0

    with pytest.raises(IdempotencyError):
        claw_back_purchase(account_id, 30, charge_id="ch_1")


@pytest.mark.django_db
def test_claw_back_purchase_with_empty_pool_returns_none():
    account_id = uuid.uuid4()
    _fund(account_id, included=10)

    assert claw_back_purchase(account_id, 10, charge_id="ch_empty") is None
    assert get_balance(account_id).included_credits == 10


@pytest.mark.django_db
def test_manual_adjust_cannot_take_pool_negative():
    account_id = uuid.uuid4()
    _fund(account_id, purchased=4)

    with pytest.raises(InsufficientCreditsError) as exc:
        manual_adjust(account_id, -5, credit_type="purchased", actor="support@example.com", description="Correction")

    assert exc.value.as_dict() == {"required": 5, "available": 4}

    entry = manual_adjust(account_id, -4, credit_type="purchased", actor="support@example.com", description="Correction")
    assert entry.created_by == "support@example.com"
    assert get_balance(account_id).purchased_credits == 0


@pytest.mark.django_db
def test_ledger_entries_are_immutable():
    account_id = uuid.uuid4()
    _fund(account_id, purchased=5)
    entry = CreditLedgerEntry.objects.for_account(account_id).get()

    entry.amount = 500
    with pytest.raises(ValidationError):
        entry.save()
    with pytest.raises(ValidationError):
        entry.delete()


@pytest.mark.django_db
def test_ledger_sums_to_balance_after_mixed_operations():
    account_id = uuid.uuid4()
    _fund(account_id, included=12, purchased=9)
    debit(account_id, 15, feature_type=FeatureType.CONCEPT_SCHEDULE, idempotency_key="concept:1")
    refund_feature(account_id, 15, "concept:1", feature_type=FeatureType.CONCEPT_SCHEDULE)
    debit(account_id, 3, feature_type=FeatureType.RSS_FEEDS, idempotency_key="rss:9")
    claw_back_purchase(account_id, 2, charge_id="ch_9")

    balance = get_balance(account_id)
    result = reconcile_account(account_id)

    assert balance.total_credits == balance.included_credits + balance.purchased_credits
    assert result.is_consistent
    assert result.ledger_included + result.ledger_purchased == balance.total_credits


@pytest.mark.django_db
def test_overlong_keys_are_rejected_before_credits_move():
    account_id = uuid.uuid4()
    _fund(account_id, included=3, purchased=10)
    rows_before = CreditLedgerEntry.objects.for_account(account_id).count()
    key = "k" * (MAX_OPERATION_KEY_LENGTH + 1)

    with pytest.raises(ValueError):
        debit(account_id, 5, feature_type=FeatureType.GEO_GRID, idempotency_key=key)
    with pytest.raises(ValueError):
        refund_feature(account_id, 5, key, feature_type=FeatureType.GEO_GRID)
    with pytest.raises(ValueError):
        credit(account_id, 5, credit_type="purchased", transaction_type="purchase", idempotency_key=key)

    assert CreditLedgerEntry.objects.for_account(account_id).count() == rows_before
    balance = get_balance(account_id)
    assert (balance.included_credits, balance.purchased_credits) == (3, 10)


@pytest.mark.django_db
def test_longest_accepted_key_fits_every_derived_part():
    account_id = uuid.uuid4()
    _fund(account_id, included=3, purchased=10)
    key = "k" * MAX_OPERATION_KEY_LENGTH

    entries = debit(account_id, 5, feature_type=FeatureType.GEO_GRID, idempotency_key=key)
    refund = refund_feature(account_id, 5, key, feature_type=FeatureType.GEO_GRID)

    assert max(len(entry.idempotency_key) for entry in entries) == 255
    assert refund.idempotency_key == f"{key}:refund"


@pytest.mark.django_db
def test_debit_locks_balance_row_inside_its_own_transaction():
    account_id = uuid.uuid4()
    _fund(account_id, purchased=10)
    outer_savepoints = len(connection.savepoint_ids)
    select_for_update = CreditBalance.objects.select_for_update
    depths = []

    def tracking_select_for_update(*args, **kwargs):
        depths.append(len(connection.savepoint_ids))
        return select_for_update(*args, **kwargs)

    with mock.patch.object(CreditBalance.objects, "select_for_update", side_effect=tracking_select_for_update):
        debit(account_id, 4, feature_type=FeatureType.BACKLINKS, idempotency_key="backlinks:lock")

    assert len(depths) == 1
    assert depths[0] > outer_savepoints
    assert get_balance(account_id).purchased_credits == 6
