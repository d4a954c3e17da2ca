import uuid

import django.core.validators
from django.db import migrations, models


FEATURE_TYPE_CHOICES = [
    ("geo_grid", "Geo grid"),
    ("rank_tracking", "Rank tracking"),
    ("llm_visibility", "LLM visibility"),
    ("concept_schedule", "Concept schedule"),
    ("review_matching", "Review matching"),
    ("backlinks", "Backlinks"),
    ("rss_feeds", "RSS feeds"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="CreditBalance",
            fields=[
                ("account_id", models.UUIDField(help_text="Account owning this balance (managed by the accounts service).", primary_key=True, serialize=False)),
                ("included_credits", models.IntegerField(default=0, help_text="Credits granted by the subscription tier; expire monthly.", validators=[django.core.validators.MinValueValidator(0)])),
                ("purchased_credits", models.IntegerField(default=0, help_text="Credits bought as top-ups; never expire.", validators=[django.core.validators.MinValueValidator(0)])),
                ("included_credits_expire_at", models.DateTimeField(blank=True, help_text="Expiry of the included pool, set on the most recent monthly grant.", null=True)),
                ("last_monthly_grant_at", models.DateTimeField(blank=True, help_text="Timestamp of the most recent monthly grant.", null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "credit_balances",
                "ordering": ["-updated_at"],
                "verbose_name": "Credit balance",
                "verbose_name_plural": "Credit balances",
                "constraints": [
                    models.CheckConstraint(condition=models.Q(included_credits__gte=0), name="credit_balance_included_non_negative"),
                    models.CheckConstraint(condition=models.Q(purchased_credits__gte=0), name="credit_balance_purchased_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditLedgerEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("account_id", models.UUIDField(db_index=True, help_text="Account whose balance this entry moved.")),
                ("amount", models.IntegerField(help_text="Signed credit amount; positive for credits, negative for debits.")),
                ("balance_after", models.IntegerField(help_text="Total balance immediately after this entry (audit convenience).")),
                ("credit_type", models.CharField(choices=[("included", "Included"), ("purchased", "Purchased")], help_text="Pool moved by this entry.", max_length=16)),
                ("transaction_type", models.CharField(choices=[("monthly_grant", "Monthly grant"), ("monthly_expire", "Monthly expiry"), ("purchase", "Purchase"), ("refund", "Refund"), ("feature_debit", "Feature debit"), ("feature_refund", "Feature refund"), ("manual_adjust", "Manual adjustment"), ("promo_grant", "Promotional grant")], help_text="Categorisation of the credit movement.", max_length=32)),
                ("feature_type", models.CharField(blank=True, choices=FEATURE_TYPE_CHOICES, help_text="Priced feature tied to a feature debit or refund.", max_length=32, null=True)),
                ("feature_metadata", models.JSONField(blank=True, help_text="Structured feature payload captured alongside a feature debit or refund.", null=True)),
                ("idempotency_key", models.CharField(blank=True, db_index=True, help_text="Stored idempotency key (operation key plus part suffix when split).", max_length=255, null=True)),
                ("operation_key", models.CharField(blank=True, help_text="Caller-supplied logical operation key.", max_length=255, null=True)),
                ("operation_part", models.CharField(choices=[("whole", "Whole operation"), ("included", "Included pool share"), ("purchased", "Purchased pool share"), ("refund", "Compensating refund")], default="whole", help_text="Which row of the logical operation this entry is.", max_length=16)),
                ("stripe_session_id", models.CharField(blank=True, max_length=255, null=True)),
                ("stripe_invoice_id", models.CharField(blank=True, max_length=255, null=True)),
                ("stripe_charge_id", models.CharField(blank=True, max_length=255, null=True)),
                ("description", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("created_by", models.CharField(blank=True, help_text="Auth user or system actor responsible.", max_length=255)),
            ],
            options={
                "db_table": "credit_ledger",
                "ordering": ["-created_at"],
                "verbose_name": "Credit ledger entry",
                "verbose_name_plural": "Credit ledger entries",
                "constraints": [
                    models.CheckConstraint(condition=~models.Q(amount=0), name="credit_ledger_non_zero_amount"),
                    models.UniqueConstraint(condition=models.Q(operation_key__isnull=False), fields=["operation_key", "operation_part"], name="credit_ledger_operation_part_unique"),
                ],
                "indexes": [
                    models.Index(fields=["account_id", "-created_at"], name="credit_ledger_account_idx"),
                    models.Index(fields=["feature_type"], name="credit_ledger_feature_idx"),
                    models.Index(fields=["transaction_type"], name="credit_ledger_tx_type_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditPricingRule",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("feature_type", models.CharField(choices=FEATURE_TYPE_CHOICES, max_length=32)),
                ("rule_key", models.CharField(default="default", max_length=64)),
                ("credit_cost", models.PositiveIntegerField()),
                ("description", models.CharField(blank=True, max_length=255)),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "db_table": "credit_pricing_rules",
                "ordering": ["feature_type", "rule_key"],
                "verbose_name": "Credit pricing rule",
                "verbose_name_plural": "Credit pricing rules",
                "constraints": [
                    models.UniqueConstraint(fields=["feature_type", "rule_key"], name="credit_pricing_rule_unique"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditPack",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=100, unique=True)),
                ("credits", models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                ("price_cents", models.PositiveIntegerField()),
                ("provider_price_id", models.CharField(blank=True, help_text="Stripe price for a one-time purchase.", max_length=255)),
                ("provider_price_id_recurring", models.CharField(blank=True, help_text="Stripe price for the monthly auto top-up.", max_length=255)),
                ("is_active", models.BooleanField(default=True)),
                ("display_order", models.PositiveIntegerField(default=0)),
            ],
            options={
                "db_table": "credit_packs",
                "ordering": ["display_order", "credits"],
                "verbose_name": "Credit pack",
                "verbose_name_plural": "Credit packs",
            },
        ),
        migrations.CreateModel(
            name="TierCredits",
            fields=[
                ("tier", models.CharField(max_length=50, primary_key=True, serialize=False)),
                ("monthly_credits", models.PositiveIntegerField(default=0)),
            ],
            options={
                "db_table": "credit_included_by_tier",
                "ordering": ["monthly_credits"],
                "verbose_name": "Tier credits",
                "verbose_name_plural": "Tier credits",
            },
        ),
        migrations.CreateModel(
            name="CreditWebhookEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("payload_hash", models.CharField(blank=True, help_text="SHA256 of the canonical event JSON.", max_length=64)),
                ("status", models.CharField(choices=[("received", "Received"), ("processed", "Processed"), ("ignored", "Ignored"), ("failed", "Failed")], default="received", max_length=20)),
                ("last_error", models.TextField(blank=True)),
                ("handled", models.BooleanField(default=False, help_text="True once the event has been fully processed.")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "credit_webhook_events",
                "ordering": ["-created_at"],
                "verbose_name": "Credit webhook event",
                "verbose_name_plural": "Credit webhook events",
                "indexes": [
                    models.Index(fields=["status"], name="credit_webhook_status_idx"),
                ],
            },
        ),
    ]
