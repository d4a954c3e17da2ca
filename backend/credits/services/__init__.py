"""Public call contract of the credit ledger."""
from .audit import LedgerPage, Reconciliation, get_ledger, reconcile_account
from .balances import Balance, ensure_balance_exists, get_balance
from .errors import CreditLedgerError, CreditStorageError, IdempotencyError, InsufficientCreditsError
from .features import UnknownFeatureError, estimate_cost
from .guard import AllSubChecksFailed, CreditOperationResult, run_sub_checks, with_credits
from .ledger import credit, debit, refund_feature
from .pricing import CreditCheck, PricingConfigurationError, check_credits, get_feature_cost

__all__ = [
    "AllSubChecksFailed",
    "Balance",
    "CreditCheck",
    "CreditLedgerError",
    "CreditOperationResult",
    "CreditStorageError",
    "IdempotencyError",
    "InsufficientCreditsError",
    "LedgerPage",
    "PricingConfigurationError",
    "Reconciliation",
    "UnknownFeatureError",
    "check_credits",
    "credit",
    "debit",
    "ensure_balance_exists",
    "estimate_cost",
    "get_balance",
    "get_feature_cost",
    "get_ledger",
    "reconcile_account",
    "refund_feature",
    "run_sub_checks",
    "with_credits",
]
