"""
Management command to seed the plan catalog.

Creates or updates the five SmartDuka plans (Trial, Starter, Basic, Silver,
Gold) with their prices and resource limits. Prices are in KES.

Usage:
    python manage.py seed_plans              # Create missing plans
    python manage.py seed_plans --force      # Also update existing plans
"""

from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction

from smartduka.subscriptions.constants import PlanStatus
from smartduka.subscriptions.models import Plan

PLAN_CONFIG = {
    "trial": {
        "name": "Trial",
        "description": "Try SmartDuka free for 14 days with one shop.",
        "daily_price": Decimal("0"),
        "monthly_price": Decimal("0"),
        "annual_price": Decimal("0"),
        "max_shops": 1,
        "max_employees": 2,
        "max_products": 100,
        "trial_days": 14,
        "display_order": 0,
    },
    "starter": {
        "name": "Starter",
        "description": "For a single shop getting started.",
        "daily_price": Decimal("99"),
        "monthly_price": Decimal("1000"),
        "annual_price": Decimal("10000"),
        "max_shops": 1,
        "max_employees": 2,
        "max_products": 500,
        "trial_days": 0,
        "display_order": 1,
    },
    "basic": {
        "name": "Basic",
        "description": "For a growing shop with a second branch.",
        "daily_price": Decimal("149"),
        "monthly_price": Decimal("1500"),
        "annual_price": Decimal("15000"),
        "max_shops": 2,
        "max_employees": 5,
        "max_products": 1000,
        "trial_days": 0,
        "display_order": 2,
    },
    "silver": {
        "name": "Silver",
        "description": "For small chains and delivery trucks.",
        "daily_price": Decimal("249"),
        "monthly_price": Decimal("2500"),
        "annual_price": Decimal("25000"),
        "max_shops": 5,
        "max_employees": 15,
        "max_products": 2000,
        "trial_days": 0,
        "display_order": 3,
    },
    "gold": {
        "name": "Gold",
        "description": "For established businesses with many branches.",
        "daily_price": Decimal("449"),
        "monthly_price": Decimal("4500"),
        "annual_price": Decimal("45000"),
        "max_shops": 10,
        "max_employees": 25,
        "max_products": 4000,
        "trial_days": 0,
        "display_order": 4,
    },
}


class Command(BaseCommand):
    help = "Seed the subscription plan catalog"

    def add_arguments(self, parser):
        parser.add_argument(
            "--force",
            action="store_true",
            help="Update existing plans with the latest configuration",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        force_update = options["force"]
        for code, config in PLAN_CONFIG.items():
            plan, created = Plan.objects.get_or_create(
                code=code,
                status=PlanStatus.ACTIVE,
                defaults=config,
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f"  Created: {plan.name}"))
            elif force_update:
                for field, value in config.items():
                    setattr(plan, field, value)
                plan.save()
                self.stdout.write(self.style.SUCCESS(f"  Updated: {plan.name}"))
            else:
                self.stdout.write(
                    f"  Exists: {plan.name} (use --force to update limits)",
                )
        self._show_summary()

    def _show_summary(self):
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write("Summary")
        self.stdout.write("=" * 60)
        for plan in Plan.objects.filter(status=PlanStatus.ACTIVE):
            self.stdout.write(
                f"  {plan.name}: KES {plan.monthly_price:,.0f}/mo, "
                f"{plan.max_shops} shop(s), {plan.max_employees} employee(s), "
                f"{plan.max_products} product(s)",
            )
        self.stdout.write(self.style.SUCCESS("\nDone!"))
