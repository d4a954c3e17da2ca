"""Pricing lookups and deterministic cost formulas for metered features."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from django.db import DatabaseError

from credits.models import CreditPack, CreditPricingRule, FeatureType, TierCredits

from .balances import Balance, get_balance
from .errors import CreditLedgerError, CreditStorageError

logger = logging.getLogger(__name__)

GEOGRID_BASE_COST = 10
GEOGRID_CELL_COST = 1
GEOGRID_KEYWORD_COST = 2


class PricingConfigurationError(CreditLedgerError):
    """Raised when a cost cannot be resolved from the configured pricing."""


@dataclass(frozen=True)
class CreditCheck:
    """Read-only pre-flight answer: can the account afford ``required`` credits."""

    has_credits: bool
    required: int
    available: int
    balance: Balance

    def as_dict(self) -> dict:
        return {
            "has_credits": self.has_credits,
            "required": self.required,
            "available": self.available,
            "balance": self.balance.as_dict(),
        }


def get_pricing_rules(feature_type) -> List[CreditPricingRule]:
    """Active pricing rules for a feature, ordered by rule key."""

    try:
        return list(
            CreditPricingRule.objects.filter(feature_type=FeatureType(feature_type), is_active=True).order_by("rule_key")
        )
    except DatabaseError as exc:
        raise CreditStorageError(f"Failed to get pricing rules for {feature_type}.") from exc


def get_credit_packs() -> List[CreditPack]:
    try:
        return list(CreditPack.objects.filter(is_active=True).order_by("display_order", "credits"))
    except DatabaseError as exc:
        raise CreditStorageError("Failed to get credit packs.") from exc


def get_tier_credits(tier: str) -> int:
    """Monthly included credits for ``tier``; unknown tiers get nothing."""

    try:
        row = TierCredits.objects.filter(tier=tier).first()
    except DatabaseError as exc:
        raise CreditStorageError(f"Failed to get tier credits for {tier}.") from exc
    return row.monthly_credits if row else 0


def get_all_tier_credits() -> List[TierCredits]:
    try:
        return list(TierCredits.objects.order_by("monthly_credits"))
    except DatabaseError as exc:
        raise CreditStorageError("Failed to get tier credits.") from exc


def get_feature_cost(feature_type, rule_key: str = "default", fallback: Optional[int] = None) -> int:
    """Resolve the credit cost of one pricing rule.

    Falls back to ``fallback`` when the rule is missing or inactive. Without
    a fallback a missing rule raises ``PricingConfigurationError``.
    """

    feature_type = FeatureType(feature_type)
    try:
        rule = CreditPricingRule.objects.filter(feature_type=feature_type, rule_key=rule_key, is_active=True).first()
    except DatabaseError as exc:
        raise CreditStorageError(f"Failed to get pricing rule {feature_type.value}:{rule_key}.") from exc

    if rule is not None:
        return rule.credit_cost
    if fallback is None:
        raise PricingConfigurationError(f"No active pricing rule for {feature_type.value}:{rule_key}.")
    logger.info("No pricing rule for %s:%s, using fallback cost %s", feature_type.value, rule_key, fallback)
    return fallback


def calculate_geogrid_cost(
    grid_size: int,
    keyword_count: int = 1,
    *,
    base: int = GEOGRID_BASE_COST,
    per_cell: int = GEOGRID_CELL_COST,
    per_keyword: int = GEOGRID_KEYWORD_COST,
) -> int:
    """Base fee plus a charge per grid cell plus a charge per keyword.

    With the default rates this is ``10 + grid_size ** 2 + 2 * keyword_count``.
    """

    if grid_size < 1:
        raise ValueError("Grid size must be at least 1.")
    if keyword_count < 0:
        raise ValueError("Keyword count cannot be negative.")
    return base + per_cell * grid_size * grid_size + per_keyword * keyword_count


def geogrid_rates() -> Dict[str, int]:
    """Configured geo grid rates, falling back to the default formula's rates."""

    return {
        "base": get_feature_cost(FeatureType.GEO_GRID, "base", fallback=GEOGRID_BASE_COST),
        "per_cell": get_feature_cost(FeatureType.GEO_GRID, "per_cell", fallback=GEOGRID_CELL_COST),
        "per_keyword": get_feature_cost(FeatureType.GEO_GRID, "per_keyword", fallback=GEOGRID_KEYWORD_COST),
    }


def check_credits(account_id, cost: int) -> CreditCheck:
    balance = get_balance(account_id)
    return CreditCheck(
        has_credits=balance.total_credits >= cost,
        required=cost,
        available=balance.total_credits,
        balance=balance,
    )


def check_geogrid_credits(account_id, grid_size: int, keyword_count: int = 1) -> CreditCheck:
    return check_credits(account_id, calculate_geogrid_cost(grid_size, keyword_count, **geogrid_rates()))
