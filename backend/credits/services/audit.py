"""Read-back of ledger history and balance reconciliation for support and audit."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from django.db import DatabaseError

from credits.models import CreditBalance, CreditLedgerEntry, FeatureType

from .balances import Balance, get_balance
from .errors import CreditStorageError

logger = logging.getLogger(__name__)

DEFAULT_OFFSET_PAGE_SIZE = 20


@dataclass(frozen=True)
class LedgerPage:
    entries: List[CreditLedgerEntry]
    total: int


@dataclass(frozen=True)
class Reconciliation:
    """Cached balance compared against the summed ledger, per pool."""

    account_id: str
    cached_included: int
    cached_purchased: int
    ledger_included: int
    ledger_purchased: int

    @property
    def is_consistent(self) -> bool:
        return self.cached_included == self.ledger_included and self.cached_purchased == self.ledger_purchased

    @property
    def drift(self) -> int:
        return (self.cached_included + self.cached_purchased) - (self.ledger_included + self.ledger_purchased)


def ledger_queryset(account_id, *, feature_type=None, transaction_type=None):
    queryset = CreditLedgerEntry.objects.for_account(account_id)
    if feature_type:
        queryset = queryset.filter(feature_type=FeatureType(feature_type))
    if transaction_type:
        queryset = queryset.filter(transaction_type=CreditLedgerEntry.TransactionType(transaction_type))
    return queryset.order_by("-created_at")


def get_ledger(
    account_id,
    *,
    limit: Optional[int] = None,
    offset: int = 0,
    feature_type=None,
    transaction_type=None,
) -> LedgerPage:
    """Newest-first ledger entries for an account plus the total matching count.

    ``offset`` without ``limit`` returns a page of twenty entries.
    """

    if limit is not None and limit < 0:
        raise ValueError("Limit cannot be negative.")
    if offset < 0:
        raise ValueError("Offset cannot be negative.")

    queryset = ledger_queryset(account_id, feature_type=feature_type, transaction_type=transaction_type)
    if limit is None and offset:
        limit = DEFAULT_OFFSET_PAGE_SIZE
    try:
        total = queryset.count()
        window = queryset[offset:offset + limit] if limit is not None else queryset[offset:]
        entries = list(window)
    except DatabaseError as exc:
        raise CreditStorageError(f"Failed to get ledger entries for account {account_id}.") from exc
    return LedgerPage(entries=entries, total=total)


def reconcile_account(account_id) -> Reconciliation:
    """Compare the cached balance row with the sum of the account's ledger entries."""

    balance: Balance = get_balance(account_id)
    try:
        totals = CreditLedgerEntry.objects.for_account(account_id).pool_totals()
    except DatabaseError as exc:
        raise CreditStorageError(f"Failed to sum ledger entries for account {account_id}.") from exc

    result = Reconciliation(
        account_id=str(account_id),
        cached_included=balance.included_credits,
        cached_purchased=balance.purchased_credits,
        ledger_included=totals["included"],
        ledger_purchased=totals["purchased"],
    )
    if not result.is_consistent:
        logger.warning(
            "Credit balance drift for account %s: cached %s/%s, ledger %s/%s",
            account_id,
            result.cached_included,
            result.cached_purchased,
            result.ledger_included,
            result.ledger_purchased,
        )
    return result


def accounts_with_balances():
    return CreditBalance.objects.values_list("account_id", flat=True)
