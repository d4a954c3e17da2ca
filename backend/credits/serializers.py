"""DRF serializers for the read-only credit endpoints."""
from __future__ import annotations

from rest_framework import serializers

from credits.models import CreditLedgerEntry, CreditPack, CreditPricingRule, TierCredits


class BalanceSerializer(serializers.Serializer):
    account_id = serializers.UUIDField(read_only=True)
    included_credits = serializers.IntegerField(read_only=True)
    purchased_credits = serializers.IntegerField(read_only=True)
    total_credits = serializers.IntegerField(read_only=True)
    included_credits_expire_at = serializers.DateTimeField(read_only=True, allow_null=True)
    last_monthly_grant_at = serializers.DateTimeField(read_only=True, allow_null=True)


class CreditLedgerEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = CreditLedgerEntry
        fields = (
            "id",
            "account_id",
            "amount",
            "balance_after",
            "credit_type",
            "transaction_type",
            "feature_type",
            "feature_metadata",
            "idempotency_key",
            "stripe_session_id",
            "stripe_invoice_id",
            "stripe_charge_id",
            "description",
            "created_at",
            "created_by",
        )
        read_only_fields = fields


class CreditPricingRuleSerializer(serializers.ModelSerializer):
    class Meta:
        model = CreditPricingRule
        fields = ("feature_type", "rule_key", "credit_cost", "description")
        read_only_fields = fields


class CreditPackSerializer(serializers.ModelSerializer):
    class Meta:
        model = CreditPack
        fields = ("id", "name", "credits", "price_cents", "display_order")
        read_only_fields = fields


class TierCreditsSerializer(serializers.ModelSerializer):
    class Meta:
        model = TierCredits
        fields = ("tier", "monthly_credits")
        read_only_fields = fields
