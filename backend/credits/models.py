"""Credit models: per-account balances, the append-only ledger, and pricing configuration."""
import uuid

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models, transaction
from django.db.models import Q, Sum
from django.utils import timezone


class FeatureType(models.TextChoices):
    """Metered features that spend credits."""

    GEO_GRID = "geo_grid", "Geo grid"
    RANK_TRACKING = "rank_tracking", "Rank tracking"
    LLM_VISIBILITY = "llm_visibility", "LLM visibility"
    CONCEPT_SCHEDULE = "concept_schedule", "Concept schedule"
    REVIEW_MATCHING = "review_matching", "Review matching"
    BACKLINKS = "backlinks", "Backlinks"
    RSS_FEEDS = "rss_feeds", "RSS feeds"


class CreditBalance(models.Model):
    """Cached two-pool balance for one account."""

    account_id = models.UUIDField(
        primary_key=True,
        help_text="Account owning this balance (managed by the accounts service).",
    )
    included_credits = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Credits granted by the subscription tier; expire monthly.",
    )
    purchased_credits = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Credits bought as top-ups; never expire.",
    )
    included_credits_expire_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Expiry of the included pool, set on the most recent monthly grant.",
    )
    last_monthly_grant_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Timestamp of the most recent monthly grant.",
    )
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "credit_balances"
        verbose_name = "Credit balance"
        verbose_name_plural = "Credit balances"
        ordering = ["-updated_at"]
        constraints = [
            models.CheckConstraint(
                condition=Q(included_credits__gte=0),
                name="credit_balance_included_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(purchased_credits__gte=0),
                name="credit_balance_purchased_non_negative",
            ),
        ]

    @property
    def total_credits(self) -> int:
        return (self.included_credits or 0) + (self.purchased_credits or 0)

    def clean(self):
        super().clean()
        if self.included_credits is not None and self.included_credits < 0:
            raise ValidationError("Included credits cannot be negative.")
        if self.purchased_credits is not None and self.purchased_credits < 0:
            raise ValidationError("Purchased credits cannot be negative.")

    def save(self, *args, **kwargs):
        self.full_clean(validate_unique=False, validate_constraints=False)
        return super().save(*args, **kwargs)

    def __str__(self):
        return f"CreditBalance<{self.account_id}: {self.included_credits}+{self.purchased_credits}>"


class CreditLedgerEntryQuerySet(models.QuerySet):
    def for_account(self, account_id):
        return self.filter(account_id=account_id)

    def pool_totals(self) -> dict:
        """Sum signed amounts per credit pool."""
        totals = self.aggregate(
            included=Sum("amount", filter=Q(credit_type=CreditLedgerEntry.CreditType.INCLUDED)),
            purchased=Sum("amount", filter=Q(credit_type=CreditLedgerEntry.CreditType.PURCHASED)),
        )
        return {pool: value or 0 for pool, value in totals.items()}


class CreditLedgerEntry(models.Model):
    """Immutable, signed record of a single pool mutation."""

    class CreditType(models.TextChoices):
        INCLUDED = "included", "Included"
        PURCHASED = "purchased", "Purchased"

    class TransactionType(models.TextChoices):
        MONTHLY_GRANT = "monthly_grant", "Monthly grant"
        MONTHLY_EXPIRE = "monthly_expire", "Monthly expiry"
        PURCHASE = "purchase", "Purchase"
        REFUND = "refund", "Refund"
        FEATURE_DEBIT = "feature_debit", "Feature debit"
        FEATURE_REFUND = "feature_refund", "Feature refund"
        MANUAL_ADJUST = "manual_adjust", "Manual adjustment"
        PROMO_GRANT = "promo_grant", "Promotional grant"

    class OperationPart(models.TextChoices):
        WHOLE = "whole", "Whole operation"
        INCLUDED = "included", "Included pool share"
        PURCHASED = "purchased", "Purchased pool share"
        REFUND = "refund", "Compensating refund"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    account_id = models.UUIDField(
        db_index=True,
        help_text="Account whose balance this entry moved.",
    )
    amount = models.IntegerField(
        help_text="Signed credit amount; positive for credits, negative for debits.",
    )
    balance_after = models.IntegerField(
        help_text="Total balance immediately after this entry (audit convenience).",
    )
    credit_type = models.CharField(
        max_length=16,
        choices=CreditType.choices,
        help_text="Pool moved by this entry.",
    )
    transaction_type = models.CharField(
        max_length=32,
        choices=TransactionType.choices,
        help_text="Categorisation of the credit movement.",
    )
    feature_type = models.CharField(
        max_length=32,
        choices=FeatureType.choices,
        blank=True,
        null=True,
        help_text="Priced feature tied to a feature debit or refund.",
    )
    feature_metadata = models.JSONField(
        blank=True,
        null=True,
        help_text="Structured feature payload captured alongside a feature debit or refund.",
    )
    # Not unique: uniqueness is enforced on (operation_key, operation_part),
    # so a caller key ending in ":included" cannot clash with a split debit.
    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        db_index=True,
        help_text="Stored idempotency key (operation key plus part suffix when split).",
    )
    operation_key = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Caller-supplied logical operation key.",
    )
    operation_part = models.CharField(
        max_length=16,
        choices=OperationPart.choices,
        default=OperationPart.WHOLE,
        help_text="Which row of the logical operation this entry is.",
    )
    stripe_session_id = models.CharField(max_length=255, blank=True, null=True)
    stripe_invoice_id = models.CharField(max_length=255, blank=True, null=True)
    stripe_charge_id = models.CharField(max_length=255, blank=True, null=True)
    description = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    created_by = models.CharField(
        max_length=255,
        blank=True,
        help_text="Auth user or system actor responsible.",
    )

    objects = CreditLedgerEntryQuerySet.as_manager()

    class Meta:
        db_table = "credit_ledger"
        verbose_name = "Credit ledger entry"
        verbose_name_plural = "Credit ledger entries"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=~Q(amount=0),
                name="credit_ledger_non_zero_amount",
            ),
            models.UniqueConstraint(
                fields=["operation_key", "operation_part"],
                condition=Q(operation_key__isnull=False),
                name="credit_ledger_operation_part_unique",
            ),
        ]
        indexes = [
            models.Index(fields=["account_id", "-created_at"], name="credit_ledger_account_idx"),
            models.Index(fields=["feature_type"], name="credit_ledger_feature_idx"),
            models.Index(fields=["transaction_type"], name="credit_ledger_tx_type_idx"),
        ]

    def clean(self):
        super().clean()
        if self.amount == 0:
            raise ValidationError("Amount must be non-zero.")

    def save(self, *args, **kwargs):
        if self.pk and CreditLedgerEntry.objects.filter(pk=self.pk).exists():
            raise ValidationError("CreditLedgerEntry records are immutable.")
        self.full_clean(validate_unique=False, validate_constraints=False)
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("CreditLedgerEntry records are immutable.")

    def __str__(self):
        return f"CreditLedgerEntry<{self.transaction_type}:{self.amount} for {self.account_id}>"


class CreditPricingRule(models.Model):
    """Credit cost of one pricing rule for a feature."""

    feature_type = models.CharField(max_length=32, choices=FeatureType.choices)
    rule_key = models.CharField(max_length=64, default="default")
    credit_cost = models.PositiveIntegerField()
    description = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "credit_pricing_rules"
        verbose_name = "Credit pricing rule"
        verbose_name_plural = "Credit pricing rules"
        ordering = ["feature_type", "rule_key"]
        constraints = [
            models.UniqueConstraint(
                fields=["feature_type", "rule_key"],
                name="credit_pricing_rule_unique",
            ),
        ]

    def __str__(self):
        return f"CreditPricingRule<{self.feature_type}:{self.rule_key}={self.credit_cost}>"


class CreditPack(models.Model):
    """Purchasable bundle of credits."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100, unique=True)
    credits = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price_cents = models.PositiveIntegerField()
    provider_price_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe price for a one-time purchase.",
    )
    provider_price_id_recurring = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe price for the monthly auto top-up.",
    )
    is_active = models.BooleanField(default=True)
    display_order = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "credit_packs"
        verbose_name = "Credit pack"
        verbose_name_plural = "Credit packs"
        ordering = ["display_order", "credits"]

    def __str__(self):
        return f"CreditPack<{self.name}:{self.credits}>"


class TierCredits(models.Model):
    """Monthly included-credit allowance of a subscription tier."""

    tier = models.CharField(max_length=50, primary_key=True)
    monthly_credits = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "credit_included_by_tier"
        verbose_name = "Tier credits"
        verbose_name_plural = "Tier credits"
        ordering = ["monthly_credits"]

    def __str__(self):
        return f"TierCredits<{self.tier}:{self.monthly_credits}>"


class CreditWebhookEventManager(models.Manager):
    def claim(self, event_id, event_type, payload_hash=""):
        """Lock or create the receipt row for ``event_id``.

        Returns ``(event, already_handled)``. Events without an id cannot be
        tracked and yield ``(None, False)``.
        """
        if not event_id:
            return None, False

        with transaction.atomic():
            event = self.select_for_update().filter(event_id=event_id).first()
            if event is None:
                event = self.create(event_id=event_id, event_type=event_type or "", payload_hash=payload_hash)
                return event, False
            if event.handled:
                return event, True

            event.event_type = event_type or event.event_type
            event.payload_hash = payload_hash or event.payload_hash
            event.status = self.model.Status.RECEIVED
            event.save(update_fields=["event_type", "payload_hash", "status"])
            return event, False


class CreditWebhookEvent(models.Model):
    """Receipt log of Stripe events; an event id is applied to the ledger at most once."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=255, blank=True)
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the canonical event JSON.",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RECEIVED,
    )
    last_error = models.TextField(blank=True)
    handled = models.BooleanField(
        default=False,
        help_text="True once the event has been fully processed.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    objects = CreditWebhookEventManager()

    class Meta:
        db_table = "credit_webhook_events"
        verbose_name = "Credit webhook event"
        verbose_name_plural = "Credit webhook events"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="credit_webhook_status_idx"),
        ]

    def __str__(self):
        return f"CreditWebhookEvent<{self.event_id}:{self.status}>"

    def mark_handled(self, status):
        self.status = status
        self.handled = True
        self.last_error = ""
        self.processed_at = timezone.now()
        self.save(update_fields=["status", "handled", "last_error", "processed_at"])

    def mark_failed(self, error):
        self.status = self.Status.FAILED
        self.handled = False
        self.last_error = error
        self.processed_at = None
        self.save(update_fields=["status", "handled", "last_error", "processed_at"])
