"""URL routes for credit endpoints."""
from django.urls import path

from .views import (
    AccountBalanceView,
    AccountCreditCheckView,
    AccountLedgerView,
    PricingView,
    StripeWebhookView,
)

app_name = "credits"

urlpatterns = [
    path("accounts/<uuid:account_id>/balance/", AccountBalanceView.as_view(), name="account-balance"),
    path("accounts/<uuid:account_id>/check/", AccountCreditCheckView.as_view(), name="account-check"),
    path("accounts/<uuid:account_id>/ledger/", AccountLedgerView.as_view(), name="account-ledger"),
    path("pricing/", PricingView.as_view(), name="pricing"),
    path("webhook/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
]
