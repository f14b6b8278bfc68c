"""
Tests for the subscription management commands and the Celery tasks that
wrap them.
"""

from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase
from django.utils import timezone

from smartduka.subscriptions.constants import BillingCycle
from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.management.commands.seed_plans import PLAN_CONFIG
from smartduka.subscriptions.models import BillingEvent
from smartduka.subscriptions.models import Plan
from smartduka.subscriptions.models import Subscription
from smartduka.subscriptions.tasks import audit_subscriptions
from smartduka.subscriptions.tasks import process_subscriptions
from smartduka.subscriptions.tests.factories import BillingEventFactory
from smartduka.subscriptions.tests.factories import PlanFactory
from smartduka.subscriptions.tests.factories import SubscriptionFactory
from smartduka.tenants.tests.factories import TenantFactory


class SeedPlansCommandTests(TestCase):
    """Tests for the seed_plans management command."""

    def test_creates_all_plans_when_none_exist(self):
        out = StringIO()
        call_command("seed_plans", stdout=out)

        self.assertEqual(Plan.objects.count(), len(PLAN_CONFIG))
        gold = Plan.objects.get(code="gold")
        self.assertEqual(gold.monthly_price, Decimal("4500"))
        self.assertEqual(gold.max_shops, 10)
        trial = Plan.objects.get(code="trial")
        self.assertEqual(trial.trial_days, 14)
        self.assertIn("Created: Starter", out.getvalue())

    def test_does_not_overwrite_existing_plans_without_force(self):
        PlanFactory(code="starter", name="Custom Starter", max_products=999)

        out = StringIO()
        call_command("seed_plans", stdout=out)

        starter = Plan.objects.get(code="starter")
        self.assertEqual(starter.name, "Custom Starter")
        self.assertEqual(starter.max_products, 999)
        self.assertIn("Exists: Custom Starter", out.getvalue())

    def test_updates_plans_with_force_flag(self):
        PlanFactory(code="starter", name="Custom Starter", max_products=999)

        call_command("seed_plans", "--force", stdout=StringIO())

        starter = Plan.objects.get(code="starter")
        self.assertEqual(starter.name, "Starter")
        self.assertEqual(starter.max_products, 500)


class ProcessSubscriptionsCommandTests(TestCase):
    @classmethod
    def setUpTestData(cls):
        call_command("seed_plans", stdout=StringIO())
        cls.starter = Plan.objects.get(code="starter")

    def _lapsed(self, **kwargs):
        end = timezone.now() - timedelta(hours=1)
        return SubscriptionFactory(
            plan=self.starter,
            current_period_start=end - timedelta(days=30),
            current_period_end=end,
            **kwargs,
        )

    def test_applies_clock_transitions(self):
        sub = self._lapsed()

        out = StringIO()
        call_command("process_subscriptions", stdout=out)

        sub.refresh_from_db()
        self.assertEqual(sub.status, SubscriptionStatus.PAST_DUE)
        self.assertIn("Clock: 1 evaluated, 1 applied, 0 error(s)", out.getvalue())

    def test_payments_applied_before_clock(self):
        sub = self._lapsed()
        BillingEventFactory(tenant=sub.tenant, received_at=timezone.now())

        out = StringIO()
        call_command("process_subscriptions", stdout=out)

        sub.refresh_from_db()
        self.assertEqual(sub.status, SubscriptionStatus.ACTIVE)
        pending = BillingEvent.objects.filter(processed_at__isnull=True)
        self.assertFalse(pending.exists())
        self.assertIn("Billing events: 1 evaluated, 1 applied", out.getvalue())

    def test_single_tenant(self):
        sub = self._lapsed()
        other = self._lapsed()

        call_command(
            "process_subscriptions",
            "--tenant",
            str(sub.tenant_id),
            stdout=StringIO(),
        )

        sub.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(sub.status, SubscriptionStatus.PAST_DUE)
        self.assertEqual(other.status, SubscriptionStatus.ACTIVE)

    def test_reports_failed_events(self):
        BillingEventFactory(tenant=TenantFactory(), received_at=timezone.now())

        out = StringIO()
        call_command("process_subscriptions", stdout=out)

        self.assertIn("RecordNotFoundError", out.getvalue())


class AuditSubscriptionsCommandTests(TestCase):
    @classmethod
    def setUpTestData(cls):
        call_command("seed_plans", stdout=StringIO())
        start = timezone.now() - timedelta(days=3)
        cls.daily = SubscriptionFactory(
            plan=Plan.objects.get(code="starter"),
            billing_cycle=BillingCycle.DAILY,
            current_period_start=start,
            current_period_end=start + timedelta(days=30),
        )
        cls.orphan = TenantFactory()

    def test_dry_run_by_default(self):
        out = StringIO()
        call_command("audit_subscriptions", stdout=out)

        output = out.getvalue()
        self.assertIn("[DRY RUN] Audited 1 subscription(s)", output)
        self.assertIn("PERIOD_END_MISMATCH", output)
        self.assertIn("NO_SUBSCRIPTION", output)
        self.assertIn("2 issue(s) found, 0 fixed, 0 error(s)", output)
        self.assertFalse(Subscription.objects.filter(tenant=self.orphan).exists())

    def test_fix(self):
        out = StringIO()
        call_command("audit_subscriptions", "--fix", stdout=out)

        self.daily.refresh_from_db()
        self.assertEqual(self.daily.status, SubscriptionStatus.EXPIRED)
        self.assertEqual(
            self.daily.current_period_end,
            self.daily.current_period_start + timedelta(days=1),
        )
        self.assertTrue(Subscription.objects.filter(tenant=self.orphan).exists())
        self.assertIn("2 issue(s) found, 2 fixed", out.getvalue())

    def test_single_check(self):
        out = StringIO()
        call_command(
            "audit_subscriptions",
            "--fix",
            "--check",
            "orphaned_tenant",
            stdout=out,
        )

        self.daily.refresh_from_db()
        self.assertEqual(self.daily.status, SubscriptionStatus.ACTIVE)
        self.assertNotIn("daily_period_mismatch", out.getvalue())

    def test_unknown_check_rejected(self):
        with self.assertRaises(CommandError):
            call_command("audit_subscriptions", "--check", "made_up", stdout=StringIO())

    def test_stats(self):
        out = StringIO()
        call_command("audit_subscriptions", "--stats", stdout=out)

        output = out.getvalue()
        self.assertIn("Total subscriptions: 1", output)
        self.assertIn("daily: 1", output)


class SubscriptionTaskTests(TestCase):
    @classmethod
    def setUpTestData(cls):
        call_command("seed_plans", stdout=StringIO())

    def test_process_subscriptions_task(self):
        result = process_subscriptions.delay().get()

        self.assertEqual(result["status"], "completed")
        self.assertEqual(result["command"], "process_subscriptions")
        self.assertIn("Clock: 0 evaluated", result["output"])

    def test_audit_task_fixes_by_default(self):
        tenant = TenantFactory()

        result = audit_subscriptions.delay().get()

        self.assertTrue(Subscription.objects.filter(tenant=tenant).exists())
        self.assertIn("1 issue(s) found, 1 fixed", result["output"])
