import logging
from typing import Dict, List

from django.apps import AppConfig
from django.db.models.signals import post_migrate

logger = logging.getLogger(__name__)


def ensure_default_credit_configuration(*, update: bool = False) -> Dict[str, List[str]]:
    """Seed pricing rules, credit packs and tier allowances from settings.

    Existing rows are left alone unless ``update`` is set.
    """
    from django.conf import settings
    from django.db import OperationalError, ProgrammingError
    from .models import CreditPack, CreditPricingRule, TierCredits

    created, updated = [], []

    def _sync(model, lookup: dict, defaults: dict, label: str) -> None:
        obj, was_created = model.objects.get_or_create(**lookup, defaults=defaults)
        if was_created:
            created.append(label)
            return
        if not update:
            return
        changed = [field for field, expected in defaults.items() if getattr(obj, field) != expected]
        if changed:
            for field in changed:
                setattr(obj, field, defaults[field])
            obj.save(update_fields=changed)
            updated.append(label)

    try:
        pricing = getattr(settings, "CREDITS_DEFAULT_PRICING", {}) or {}
        for feature_type, rules in pricing.items():
            for rule_key, (credit_cost, description) in rules.items():
                _sync(
                    CreditPricingRule,
                    {"feature_type": feature_type, "rule_key": rule_key},
                    {"credit_cost": credit_cost, "description": description, "is_active": True},
                    f"pricing:{feature_type}:{rule_key}",
                )

        packs = getattr(settings, "CREDITS_DEFAULT_PACKS", {}) or {}
        for pack in packs.values():
            defaults = {key: value for key, value in pack.items() if key != "name"}
            _sync(CreditPack, {"name": pack["name"]}, defaults, f"pack:{pack['name']}")

        tiers = getattr(settings, "CREDITS_TIER_ALLOWANCES", {}) or {}
        for tier, monthly_credits in tiers.items():
            _sync(TierCredits, {"tier": tier}, {"monthly_credits": monthly_credits}, f"tier:{tier}")

    except (OperationalError, ProgrammingError):
        logger.debug("Database not ready for credit configuration seeding.")
        return {"created": [], "updated": []}

    if created or updated:
        logger.info("Credit configuration seeded. created=%s updated=%s", created, updated)
    return {"created": created, "updated": updated}


def seed_credit_configuration_after_migrate(sender, **kwargs):
    logger.info("[Credits] Seeding default credit configuration after migrate")
    ensure_default_credit_configuration()


class CreditsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'credits'

    def ready(self):
        post_migrate.connect(seed_credit_configuration_after_migrate, sender=self)
