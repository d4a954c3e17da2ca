from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import (
    CreditBalance,
    CreditLedgerEntry,
    CreditPack,
    CreditPricingRule,
    CreditWebhookEvent,
    TierCredits,
)


@admin.register(CreditBalance)
class CreditBalanceAdmin(admin.ModelAdmin):
    """Cached balances; changed only through the ledger services."""

    list_display = (
        "account_id",
        "included_credits",
        "purchased_credits",
        "total_display",
        "included_credits_expire_at",
        "updated_at",
    )
    search_fields = ("account_id",)
    list_filter = ("updated_at",)
    readonly_fields = (
        "account_id",
        "included_credits",
        "purchased_credits",
        "included_credits_expire_at",
        "last_monthly_grant_at",
        "updated_at",
    )
    ordering = ("-updated_at",)

    @admin.display(description="Total")
    def total_display(self, obj):
        return obj.total_credits

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CreditLedgerEntry)
class CreditLedgerEntryAdmin(admin.ModelAdmin):
    """Read-only audit trail for credit movements."""

    list_display = (
        "id",
        "balance_link",
        "transaction_type",
        "credit_type",
        "amount",
        "balance_after",
        "feature_type",
        "idempotency_key",
        "created_at",
    )
    search_fields = (
        "id",
        "account_id",
        "idempotency_key",
        "operation_key",
        "stripe_session_id",
        "stripe_invoice_id",
        "stripe_charge_id",
    )
    list_filter = ("transaction_type", "credit_type", "feature_type", "created_at")
    readonly_fields = (
        "id",
        "account_id",
        "amount",
        "balance_after",
        "credit_type",
        "transaction_type",
        "feature_type",
        "feature_metadata",
        "idempotency_key",
        "operation_key",
        "operation_part",
        "stripe_session_id",
        "stripe_invoice_id",
        "stripe_charge_id",
        "description",
        "created_at",
        "created_by",
    )
    ordering = ("-created_at",)

    fieldsets = (
        (
            "Movement",
            {
                "fields": (
                    "id",
                    "account_id",
                    "transaction_type",
                    "credit_type",
                    "amount",
                    "balance_after",
                    "description",
                    "created_by",
                    "created_at",
                )
            },
        ),
        ("Feature", {"fields": ("feature_type", "feature_metadata")}),
        ("Idempotency", {"fields": ("idempotency_key", "operation_key", "operation_part")}),
        ("Stripe", {"fields": ("stripe_session_id", "stripe_invoice_id", "stripe_charge_id")}),
    )

    @admin.display(description="Account")
    def balance_link(self, obj):
        url = reverse("admin:credits_creditbalance_change", args=[obj.account_id])
        return format_html('<a href="{}">{}</a>', url, obj.account_id)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CreditPricingRule)
class CreditPricingRuleAdmin(admin.ModelAdmin):
    list_display = ("feature_type", "rule_key", "credit_cost", "is_active")
    list_filter = ("feature_type", "is_active")
    search_fields = ("feature_type", "rule_key", "description")
    ordering = ("feature_type", "rule_key")


@admin.register(CreditPack)
class CreditPackAdmin(admin.ModelAdmin):
    list_display = ("name", "credits", "price_cents", "is_active", "display_order")
    list_filter = ("is_active",)
    search_fields = ("name", "provider_price_id", "provider_price_id_recurring")
    ordering = ("display_order", "credits")


@admin.register(TierCredits)
class TierCreditsAdmin(admin.ModelAdmin):
    list_display = ("tier", "monthly_credits")
    ordering = ("monthly_credits",)


@admin.register(CreditWebhookEvent)
class CreditWebhookEventAdmin(admin.ModelAdmin):
    list_display = ("event_id", "event_type", "status", "handled", "created_at", "processed_at")
    list_filter = ("status", "handled", "event_type")
    search_fields = ("event_id", "event_type")
    readonly_fields = (
        "event_id",
        "event_type",
        "payload_hash",
        "status",
        "last_error",
        "handled",
        "created_at",
        "processed_at",
    )
    ordering = ("-created_at",)

    def has_add_permission(self, request):
        return False
