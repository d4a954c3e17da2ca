"""Read side of the per-account credit balance."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from django.db import DatabaseError

from credits.models import CreditBalance

from .errors import CreditStorageError


@dataclass(frozen=True)
class Balance:
    """Snapshot of an account's two credit pools."""

    account_id: str
    included_credits: int
    purchased_credits: int
    included_credits_expire_at: Optional[datetime] = None
    last_monthly_grant_at: Optional[datetime] = None

    @property
    def total_credits(self) -> int:
        return self.included_credits + self.purchased_credits

    @classmethod
    def from_row(cls, row: CreditBalance) -> "Balance":
        return cls(
            account_id=str(row.account_id),
            included_credits=row.included_credits,
            purchased_credits=row.purchased_credits,
            included_credits_expire_at=row.included_credits_expire_at,
            last_monthly_grant_at=row.last_monthly_grant_at,
        )

    @classmethod
    def empty(cls, account_id) -> "Balance":
        return cls(account_id=str(account_id), included_credits=0, purchased_credits=0)

    def as_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "included_credits": self.included_credits,
            "purchased_credits": self.purchased_credits,
            "total_credits": self.total_credits,
            "included_credits_expire_at": self.included_credits_expire_at,
            "last_monthly_grant_at": self.last_monthly_grant_at,
        }


def get_balance(account_id) -> Balance:
    """Return the account's balance; an account without a row has zero credits."""

    try:
        row = CreditBalance.objects.filter(account_id=account_id).first()
    except DatabaseError as exc:
        raise CreditStorageError(f"Failed to get credit balance for account {account_id}.") from exc
    if row is None:
        return Balance.empty(account_id)
    return Balance.from_row(row)


def ensure_balance_exists(account_id) -> None:
    """Create a zero-valued balance row if none exists yet."""

    try:
        CreditBalance.objects.get_or_create(account_id=account_id)
    except DatabaseError as exc:
        raise CreditStorageError(f"Failed to ensure credit balance for account {account_id}.") from exc


def lock_balance(account_id) -> CreditBalance:
    """Return the account's balance row locked for update.

    Must be called inside ``transaction.atomic()``.
    """

    row, _ = CreditBalance.objects.get_or_create(account_id=account_id)
    return CreditBalance.objects.select_for_update().get(pk=row.pk)
