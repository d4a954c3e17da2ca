"""Custom pagination classes for credit endpoints."""
from __future__ import annotations

from django.conf import settings
from rest_framework.pagination import LimitOffsetPagination


class BoundedLimitOffsetPagination(LimitOffsetPagination):
    """LimitOffsetPagination enforcing an upper bound on the page size."""

    default_limit = 20

    @property
    def max_limit(self):
        return getattr(settings, "CREDITS_LEDGER_MAX_PAGE_SIZE", 100)
