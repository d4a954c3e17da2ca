"""Read-only credit endpoints for support tooling, plus the Stripe webhook intake."""
from __future__ import annotations

import json
import logging

from django.http import HttpResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.generics import ListAPIView
from rest_framework.response import Response
from rest_framework.views import APIView

from credits.filters import CreditLedgerEntryFilter
from credits.models import CreditPricingRule, CreditWebhookEvent
from credits.pagination import BoundedLimitOffsetPagination
from credits.serializers import (
    BalanceSerializer,
    CreditLedgerEntrySerializer,
    CreditPackSerializer,
    CreditPricingRuleSerializer,
    TierCreditsSerializer,
)
from credits.services.audit import ledger_queryset
from credits.services.balances import get_balance
from credits.services.errors import CreditStorageError, InsufficientCreditsError
from credits.services.pricing import (
    calculate_geogrid_cost,
    check_credits,
    geogrid_rates,
    get_all_tier_credits,
    get_credit_packs,
)
from credits.services.stripe_events import (
    StripeConfigurationError,
    StripeServiceError,
    event_digest,
    parse_event,
)
from credits.tasks import process_stripe_event_async

logger = logging.getLogger(__name__)


class AccountBalanceView(APIView):
    def get(self, request, account_id):
        try:
            balance = get_balance(account_id)
        except CreditStorageError:
            logger.exception("Balance lookup failed for account %s", account_id)
            return Response({"detail": "Balance is temporarily unavailable."}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        return Response(BalanceSerializer(balance.as_dict()).data)


class AccountCreditCheckView(APIView):
    """Pre-flight check: 200 when the account can afford the cost, 402 otherwise.

    Accepts either ``cost`` or ``grid_size`` (with optional ``keyword_count``)
    for a geo grid run.
    """

    def get(self, request, account_id):
        try:
            required = self._required_cost(request.query_params)
            result = check_credits(account_id, required)
        except ValueError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except CreditStorageError:
            logger.exception("Credit check failed for account %s", account_id)
            return Response({"detail": "Balance is temporarily unavailable."}, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        if not result.has_credits:
            error = InsufficientCreditsError(required=result.required, available=result.available)
            return Response({"detail": str(error), **error.as_dict()}, status=status.HTTP_402_PAYMENT_REQUIRED)
        return Response({"has_credits": True, "required": result.required, "available": result.available})

    @staticmethod
    def _required_cost(params) -> int:
        if "cost" in params:
            cost = int(params["cost"])
            if cost < 0:
                raise ValueError("cost cannot be negative.")
            return cost
        if "grid_size" in params:
            grid_size, keyword_count = int(params["grid_size"]), int(params.get("keyword_count", 1))
            return calculate_geogrid_cost(grid_size, keyword_count, **geogrid_rates())
        raise ValueError("Provide either cost or grid_size.")


class AccountLedgerView(ListAPIView):
    serializer_class = CreditLedgerEntrySerializer
    pagination_class = BoundedLimitOffsetPagination
    filterset_class = CreditLedgerEntryFilter

    def get_queryset(self):
        return ledger_queryset(self.kwargs["account_id"])


class PricingView(APIView):
    def get(self, request):
        rules = CreditPricingRule.objects.filter(is_active=True).order_by("feature_type", "rule_key")
        return Response(
            {
                "rules": CreditPricingRuleSerializer(rules, many=True).data,
                "packs": CreditPackSerializer(get_credit_packs(), many=True).data,
                "tiers": TierCreditsSerializer(get_all_tier_credits(), many=True).data,
            }
        )


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Verify a Stripe event, record its receipt and hand it to the credits worker."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        try:
            payload = request.body.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Stripe webhook body is not valid UTF-8.")
            return HttpResponse(status=400)

        try:
            parse_event(payload=payload, sig_header=request.headers.get("Stripe-Signature", ""))
        except StripeConfigurationError as exc:
            logger.error("Stripe webhook cannot be verified: %s", exc)
            return HttpResponse(status=500)
        except StripeServiceError as exc:
            # Covers bad signatures as well as malformed payloads.
            logger.warning("Rejected Stripe webhook: %s", exc)
            return HttpResponse(status=400)

        event = json.loads(payload)
        event_id, event_type = event.get("id"), event.get("type")
        receipt, handled = CreditWebhookEvent.objects.claim(event_id, event_type, event_digest(event))
        if handled:
            return Response({"status": receipt.status}, status=status.HTTP_200_OK)
        if receipt is None:
            logger.warning("Stripe event of type %s has no id; it will not be deduplicated.", event_type)

        process_stripe_event_async.delay(event)
        logger.info("Queued Stripe event %s (%s)", event_id, event_type)
        return Response({"status": "queued"}, status=status.HTTP_202_ACCEPTED)
