"""FilterSet definitions for credit endpoints."""
from __future__ import annotations

import django_filters

from credits.models import CreditLedgerEntry, FeatureType


class CreditLedgerEntryFilter(django_filters.FilterSet):
    feature_type = django_filters.ChoiceFilter(field_name="feature_type", choices=FeatureType.choices)
    transaction_type = django_filters.ChoiceFilter(
        field_name="transaction_type",
        choices=CreditLedgerEntry.TransactionType.choices,
    )
    credit_type = django_filters.ChoiceFilter(field_name="credit_type", choices=CreditLedgerEntry.CreditType.choices)
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = CreditLedgerEntry
        fields = ["feature_type", "transaction_type", "credit_type"]
