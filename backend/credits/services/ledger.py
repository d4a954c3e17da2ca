"""Credit ledger helpers: debits, credits and compensating refunds with idempotency.

Every mutation locks the account's balance row for the duration of the
transaction so the sufficiency check, the ledger inserts and the balance
update are applied as one unit.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, List, Optional

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from credits.models import CreditBalance, CreditLedgerEntry, FeatureType
from credits.observability.logging import log_credit_event
from credits.observability.metrics import CREDIT_DEBIT_COUNT, CREDIT_REFUND_COUNT, CREDITS_DEBITED

from .balances import lock_balance
from .errors import CreditLedgerError, CreditStorageError, IdempotencyError, InsufficientCreditsError
from .features import serialise_metadata
from .pricing import get_tier_credits

logger = logging.getLogger(__name__)

CreditType = CreditLedgerEntry.CreditType
TransactionType = CreditLedgerEntry.TransactionType
OperationPart = CreditLedgerEntry.OperationPart

# Longest derived suffix is ":purchased"; the stored key must fit the column
MAX_OPERATION_KEY_LENGTH = CreditLedgerEntry._meta.get_field("idempotency_key").max_length - len(":purchased")

__all__ = [
    "CreditLedgerError",
    "CreditStorageError",
    "IdempotencyError",
    "InsufficientCreditsError",
    "debit",
    "credit",
    "refund_feature",
    "grant_monthly_credits",
    "expire_included_credits",
    "claw_back_purchase",
    "manual_adjust",
    "first_day_of_next_month",
    "storage_key",
]


def storage_key(operation_key: str, part: str) -> str:
    """Value written to the ``idempotency_key`` column for one part of an operation."""

    part = OperationPart(part)
    if part == OperationPart.WHOLE:
        return operation_key
    return f"{operation_key}:{part.value}"


def first_day_of_next_month(now: datetime) -> datetime:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def debit(
    account_id,
    amount: int,
    *,
    feature_type,
    idempotency_key: str,
    feature_metadata: Any = None,
    description: str = "",
    actor: str = "",
) -> List[CreditLedgerEntry]:
    """Spend ``amount`` credits, consuming the included pool before the purchased pool.

    Returns the written entries: one per pool touched. Raises
    ``InsufficientCreditsError`` without writing anything when the account
    cannot cover the debit, and ``IdempotencyError`` when the key was
    already used for a debit.
    """

    _require_positive(amount, "debit")
    if not idempotency_key:
        raise ValueError("Idempotency key is required for debits.")
    _require_key_fits(idempotency_key)
    feature_type = FeatureType(feature_type)
    metadata = serialise_metadata(feature_metadata)

    with _ledger_transaction("debit", account_id):
        balance = lock_balance(account_id)
        parts = _existing_parts(idempotency_key)
        if parts - {OperationPart.REFUND.value}:
            raise IdempotencyError(idempotency_key)

        available = balance.total_credits
        if available < amount:
            raise InsufficientCreditsError(required=amount, available=available)

        included_debit = min(balance.included_credits, amount)
        purchased_debit = amount - included_debit
        split = included_debit > 0 and purchased_debit > 0

        entries = []
        for credit_type, share in ((CreditType.INCLUDED, included_debit), (CreditType.PURCHASED, purchased_debit)):
            if share == 0:
                continue
            _move_pool(balance, credit_type, -share)
            entries.append(
                _append_entry(
                    balance,
                    amount=-share,
                    credit_type=credit_type,
                    transaction_type=TransactionType.FEATURE_DEBIT,
                    operation_key=idempotency_key,
                    operation_part=OperationPart(credit_type.value) if split else OperationPart.WHOLE,
                    feature_type=feature_type,
                    feature_metadata=metadata,
                    description=description,
                    actor=actor,
                )
            )
        balance.save()

    CREDIT_DEBIT_COUNT.labels(feature_type=feature_type.value).inc()
    CREDITS_DEBITED.labels(feature_type=feature_type.value).inc(amount)
    log_credit_event(
        message="credits.debit",
        account_id=account_id,
        actor=actor,
        idempotency_key=idempotency_key,
        extra={
            "feature_type": feature_type.value,
            "amount": amount,
            "included_debit": included_debit,
            "purchased_debit": purchased_debit,
        },
    )
    return entries


def credit(
    account_id,
    amount: int,
    *,
    credit_type,
    transaction_type,
    idempotency_key: Optional[str] = None,
    stripe_session_id: Optional[str] = None,
    stripe_invoice_id: Optional[str] = None,
    stripe_charge_id: Optional[str] = None,
    description: str = "",
    actor: str = "",
    now: Optional[datetime] = None,
) -> CreditLedgerEntry:
    """Add ``amount`` credits to a single pool.

    A monthly grant into the included pool also moves the pool's expiry to
    the first day of the following month.
    """

    _require_positive(amount, "credit")
    _require_key_fits(idempotency_key)
    credit_type = CreditType(credit_type)
    transaction_type = TransactionType(transaction_type)
    now = now or timezone.now()

    with _ledger_transaction("credit", account_id):
        balance = lock_balance(account_id)
        if idempotency_key and OperationPart.WHOLE.value in _existing_parts(idempotency_key):
            raise IdempotencyError(idempotency_key)

        _move_pool(balance, credit_type, amount)
        if transaction_type == TransactionType.MONTHLY_GRANT and credit_type == CreditType.INCLUDED:
            balance.included_credits_expire_at = first_day_of_next_month(now)
            balance.last_monthly_grant_at = now

        entry = _append_entry(
            balance,
            amount=amount,
            credit_type=credit_type,
            transaction_type=transaction_type,
            operation_key=idempotency_key or None,
            operation_part=OperationPart.WHOLE,
            stripe_session_id=stripe_session_id,
            stripe_invoice_id=stripe_invoice_id,
            stripe_charge_id=stripe_charge_id,
            description=description,
            actor=actor,
        )
        balance.save()

    log_credit_event(
        message="credits.credit",
        account_id=account_id,
        actor=actor,
        idempotency_key=idempotency_key,
        extra={"amount": amount, "credit_type": credit_type.value, "transaction_type": transaction_type.value},
    )
    return entry


def refund_feature(
    account_id,
    amount: int,
    original_idempotency_key: str,
    *,
    feature_type,
    feature_metadata: Any = None,
    description: str = "",
    actor: str = "",
) -> CreditLedgerEntry:
    """Compensate a failed feature debit into the purchased pool, at most once per key."""

    _require_positive(amount, "refund")
    if not original_idempotency_key:
        raise ValueError("The original idempotency key is required for refunds.")
    _require_key_fits(original_idempotency_key)
    feature_type = FeatureType(feature_type)
    metadata = serialise_metadata(feature_metadata)

    with _ledger_transaction("refund", account_id):
        balance = lock_balance(account_id)
        if OperationPart.REFUND.value in _existing_parts(original_idempotency_key):
            raise IdempotencyError(storage_key(original_idempotency_key, OperationPart.REFUND))

        _move_pool(balance, CreditType.PURCHASED, amount)
        entry = _append_entry(
            balance,
            amount=amount,
            credit_type=CreditType.PURCHASED,
            transaction_type=TransactionType.FEATURE_REFUND,
            operation_key=original_idempotency_key,
            operation_part=OperationPart.REFUND,
            feature_type=feature_type,
            feature_metadata=metadata,
            description=description or f"Refund for failed {feature_type.value} operation",
            actor=actor,
        )
        balance.save()

    CREDIT_REFUND_COUNT.labels(feature_type=feature_type.value).inc()
    log_credit_event(
        message="credits.feature_refund",
        account_id=account_id,
        actor=actor,
        idempotency_key=entry.idempotency_key,
        extra={"feature_type": feature_type.value, "amount": amount},
    )
    return entry


def grant_monthly_credits(account_id, tier: str, *, now: Optional[datetime] = None) -> Optional[CreditLedgerEntry]:
    """Replace the account's included pool with the tier's monthly allowance.

    Leftover included credits are expired first. The grant is keyed per
    calendar month so a second run in the same month raises
    ``IdempotencyError``. Returns ``None`` for tiers without an allowance.
    """

    now = now or timezone.now()
    allowance = get_tier_credits(tier)
    key = f"monthly_grant:{account_id}:{now:%Y-%m}"

    if allowance <= 0:
        logger.info("Tier %s has no monthly allowance; nothing granted to %s", tier, account_id)
        return None

    with _ledger_transaction("grant_monthly_credits", account_id):
        balance = lock_balance(account_id)
        if OperationPart.WHOLE.value in _existing_parts(key):
            raise IdempotencyError(key)
        if balance.included_credits > 0:
            _expire_pool(balance, description="Included credits replaced by monthly grant")
            balance.save()
        # Nested atomic reuses the outer transaction and lock.
        entry = credit(
            account_id,
            allowance,
            credit_type=CreditType.INCLUDED,
            transaction_type=TransactionType.MONTHLY_GRANT,
            idempotency_key=key,
            description=f"Monthly {tier} allowance",
            actor="system",
            now=now,
        )
    return entry


def expire_included_credits(account_id, *, now: Optional[datetime] = None) -> Optional[CreditLedgerEntry]:
    """Zero the included pool once its expiry has passed."""

    now = now or timezone.now()

    with _ledger_transaction("expire_included_credits", account_id):
        balance = lock_balance(account_id)
        expire_at = balance.included_credits_expire_at
        if expire_at is None or expire_at > now or balance.included_credits <= 0:
            return None
        entry = _expire_pool(balance, description="Monthly included credits expired")
        balance.save()

    log_credit_event(
        message="credits.included_expired",
        account_id=account_id,
        extra={"amount": -entry.amount, "expired_at": expire_at.isoformat()},
    )
    return entry


def claw_back_purchase(account_id, credits: int, *, charge_id: str) -> Optional[CreditLedgerEntry]:
    """Remove refunded purchase credits from the purchased pool, never below zero."""

    _require_positive(credits, "claw back")
    if not charge_id:
        raise ValueError("A charge id is required to claw back purchased credits.")
    key = f"refund:{charge_id}"

    with _ledger_transaction("claw_back_purchase", account_id):
        balance = lock_balance(account_id)
        if OperationPart.WHOLE.value in _existing_parts(key):
            raise IdempotencyError(key)
        removable = min(credits, balance.purchased_credits)
        if removable == 0:
            logger.warning(
                "Charge %s refunded %s credits but account %s has no purchased credits left",
                charge_id,
                credits,
                account_id,
            )
            return None
        _move_pool(balance, CreditType.PURCHASED, -removable)
        entry = _append_entry(
            balance,
            amount=-removable,
            credit_type=CreditType.PURCHASED,
            transaction_type=TransactionType.REFUND,
            operation_key=key,
            operation_part=OperationPart.WHOLE,
            stripe_charge_id=charge_id,
            description=f"Refund: {removable} credits clawed back",
            actor="stripe",
        )
        balance.save()

    log_credit_event(
        message="credits.purchase_clawed_back",
        account_id=account_id,
        actor="stripe",
        idempotency_key=key,
        extra={"requested": credits, "removed": removable},
    )
    return entry


def manual_adjust(
    account_id,
    amount: int,
    *,
    credit_type,
    actor: str,
    description: str,
    idempotency_key: Optional[str] = None,
) -> CreditLedgerEntry:
    """Apply a signed support adjustment to one pool."""

    if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
        raise ValueError("Adjustment amount must be a non-zero integer.")
    _require_key_fits(idempotency_key)
    credit_type = CreditType(credit_type)

    with _ledger_transaction("manual_adjust", account_id):
        balance = lock_balance(account_id)
        if idempotency_key and OperationPart.WHOLE.value in _existing_parts(idempotency_key):
            raise IdempotencyError(idempotency_key)
        pool = _pool_value(balance, credit_type)
        if pool + amount < 0:
            raise InsufficientCreditsError(required=-amount, available=pool)
        _move_pool(balance, credit_type, amount)
        entry = _append_entry(
            balance,
            amount=amount,
            credit_type=credit_type,
            transaction_type=TransactionType.MANUAL_ADJUST,
            operation_key=idempotency_key or None,
            operation_part=OperationPart.WHOLE,
            description=description,
            actor=actor,
        )
        balance.save()

    log_credit_event(
        message="credits.manual_adjust",
        account_id=account_id,
        actor=actor,
        idempotency_key=idempotency_key,
        extra={"amount": amount, "credit_type": credit_type.value},
        level=logging.WARNING,
    )
    return entry


@contextmanager
def _ledger_transaction(action: str, account_id):
    try:
        with transaction.atomic():
            yield
    except DatabaseError as exc:
        logger.exception("Credit ledger %s failed for account %s", action, account_id)
        raise CreditStorageError(f"Failed to {action.replace('_', ' ')} for account {account_id}.") from exc


def _require_key_fits(operation_key: Optional[str]) -> None:
    if operation_key and len(operation_key) > MAX_OPERATION_KEY_LENGTH:
        raise ValueError(
            f"Idempotency key is {len(operation_key)} characters; at most {MAX_OPERATION_KEY_LENGTH} are allowed."
        )


def _require_positive(amount: int, action: str) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError(f"Amount must be a positive integer for {action} operations.")


def _existing_parts(operation_key: str) -> set:
    return set(
        CreditLedgerEntry.objects.filter(operation_key=operation_key).values_list("operation_part", flat=True)
    )


def _pool_value(balance: CreditBalance, credit_type) -> int:
    if credit_type == CreditType.INCLUDED:
        return balance.included_credits
    return balance.purchased_credits


def _move_pool(balance: CreditBalance, credit_type, delta: int) -> None:
    if credit_type == CreditType.INCLUDED:
        balance.included_credits += delta
    else:
        balance.purchased_credits += delta


def _expire_pool(balance: CreditBalance, *, description: str) -> CreditLedgerEntry:
    expired = balance.included_credits
    _move_pool(balance, CreditType.INCLUDED, -expired)
    return _append_entry(
        balance,
        amount=-expired,
        credit_type=CreditType.INCLUDED,
        transaction_type=TransactionType.MONTHLY_EXPIRE,
        operation_key=None,
        operation_part=OperationPart.WHOLE,
        description=description,
        actor="system",
    )


def _append_entry(
    balance: CreditBalance,
    *,
    amount: int,
    credit_type,
    transaction_type,
    operation_key: Optional[str],
    operation_part,
    feature_type: Optional[FeatureType] = None,
    feature_metadata: Optional[dict] = None,
    stripe_session_id: Optional[str] = None,
    stripe_invoice_id: Optional[str] = None,
    stripe_charge_id: Optional[str] = None,
    description: str = "",
    actor: str = "",
) -> CreditLedgerEntry:
    """Insert one ledger row reflecting the balance as already moved in memory."""

    stored_key = storage_key(operation_key, operation_part) if operation_key else None
    try:
        with transaction.atomic():
            return CreditLedgerEntry.objects.create(
                account_id=balance.account_id,
                amount=amount,
                balance_after=balance.total_credits,
                credit_type=credit_type,
                transaction_type=transaction_type,
                feature_type=feature_type,
                feature_metadata=feature_metadata,
                idempotency_key=stored_key,
                operation_key=operation_key,
                operation_part=operation_part,
                stripe_session_id=stripe_session_id,
                stripe_invoice_id=stripe_invoice_id,
                stripe_charge_id=stripe_charge_id,
                description=description,
                created_by=actor,
            )
    except IntegrityError as exc:
        if operation_key is None:
            raise
        raise IdempotencyError(stored_key) from exc
