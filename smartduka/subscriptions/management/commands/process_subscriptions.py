"""
Management command to run one lifecycle cycle.

Drains the billing-event inbox in receipt order, then applies due
clock-driven transitions (trial end, period end, grace end). Payments are
always applied before the clock so a tenant who paid is never suspended by
the same run.

If the inbox or the clock cannot be read the run is deferred and nothing is
changed; the next scheduled run picks it up.

Usage:
    python manage.py process_subscriptions
    python manage.py process_subscriptions --tenant 42

Environment:
    Scheduled every 15 minutes by Celery beat (``smartduka.process_subscriptions``).
"""

import logging

from django.core.management.base import BaseCommand

from smartduka.subscriptions.lifecycle import LifecycleEngine

logger = logging.getLogger(__name__)

MAX_DISPLAY_ERRORS = 10


class Command(BaseCommand):
    help = "Apply pending billing events, then clock-driven subscription transitions."

    def add_arguments(self, parser):
        parser.add_argument(
            "--tenant",
            type=int,
            default=None,
            help="Only process this tenant id",
        )

    def handle(self, *args, **options):
        engine = LifecycleEngine()
        events, clock = engine.run_cycle(tenant_id=options["tenant"])

        for label, result in (("Billing events", events), ("Clock", clock)):
            if result.deferred:
                self.stdout.write(
                    self.style.WARNING(f"{label}: deferred ({result.deferred_reason})"),
                )
                continue
            self.stdout.write(
                self.style.SUCCESS(
                    f"{label}: {result.evaluated} evaluated, "
                    f"{result.transitioned} applied, {len(result.errors)} error(s)",
                ),
            )
            for error in result.errors[:MAX_DISPLAY_ERRORS]:
                self.stdout.write(
                    f"  - tenant {error['tenant_id']}: {error['type']}: "
                    f"{error['error']}",
                )
            if len(result.errors) > MAX_DISPLAY_ERRORS:
                extra = len(result.errors) - MAX_DISPLAY_ERRORS
                self.stdout.write(f"  ... and {extra} more")
