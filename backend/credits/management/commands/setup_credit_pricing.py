"""
Create the default credit pricing configuration

Seeds pricing rules, credit packs and tier allowances from settings.
"""

from django.core.management.base import BaseCommand

from credits.apps import ensure_default_credit_configuration
from credits.models import CreditPack, CreditPricingRule, TierCredits


class Command(BaseCommand):

    help = 'Create default credit pricing rules, packs and tier allowances'

    def add_arguments(self, parser):
        parser.add_argument(
            '--update',
            action='store_true',
            help='Rewrite existing rows with the configured values'
        )

    def handle(self, *args, **options):
        update_existing = options['update']
        result = ensure_default_credit_configuration(update=update_existing)

        for label in result['created']:
            self.stdout.write(self.style.SUCCESS(f'✓ Created {label}'))
        for label in result['updated']:
            self.stdout.write(self.style.SUCCESS(f'✓ Updated {label}'))

        self.stdout.write('\n' + '=' * 50)
        self.stdout.write('Credit pricing setup completed:')
        self.stdout.write(f'  • Created: {len(result["created"])} row(s)')
        if update_existing:
            self.stdout.write(f'  • Updated: {len(result["updated"])} row(s)')

        self.stdout.write('\nPricing rules:')
        for rule in CreditPricingRule.objects.filter(is_active=True):
            self.stdout.write(f'  • {rule.feature_type}:{rule.rule_key} = {rule.credit_cost} credit(s)')

        self.stdout.write('\nCredit packs:')
        for pack in CreditPack.objects.filter(is_active=True):
            self.stdout.write(f'  • {pack.name}: {pack.credits} credits for ${pack.price_cents / 100:.2f}')

        self.stdout.write('\nTier allowances:')
        for tier in TierCredits.objects.all():
            self.stdout.write(f'  • {tier.tier}: {tier.monthly_credits} credits/month')

        if not update_existing and not result['created']:
            self.stdout.write(
                self.style.WARNING('\nNote: All rows already exist. Use the --update flag to rewrite them.')
            )
