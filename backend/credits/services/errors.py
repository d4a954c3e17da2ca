"""Exception types raised by the credit ledger."""
from __future__ import annotations


class CreditLedgerError(Exception):
    """Base exception for credit ledger operations."""


class InsufficientCreditsError(CreditLedgerError):
    """Raised when an account cannot cover a debit. Nothing is written."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: required {required}, available {available}.")

    def as_dict(self) -> dict:
        return {"required": self.required, "available": self.available}


class IdempotencyError(CreditLedgerError):
    """Raised when an operation with this idempotency key was already applied."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Operation with idempotency key '{key}' was already applied.")


class CreditStorageError(CreditLedgerError):
    """Raised when the credit store cannot be read or written."""
