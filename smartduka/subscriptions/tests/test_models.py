from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import IntegrityError
from django.db import transaction

from smartduka.subscriptions.constants import BillingCycle
from smartduka.subscriptions.constants import PlanStatus
from smartduka.subscriptions.constants import Resource
from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.models import Plan
from smartduka.subscriptions.tests.factories import PlanFactory
from smartduka.subscriptions.tests.factories import SubscriptionFactory


@pytest.mark.django_db
class TestPlan:
    def test_price_for_each_cycle(self):
        plan = PlanFactory(
            daily_price=Decimal("99"),
            monthly_price=Decimal("1000"),
            annual_price=Decimal("10000"),
        )

        assert plan.price_for(BillingCycle.DAILY, 5) == Decimal("495")
        assert plan.price_for(BillingCycle.DAILY, 0) == Decimal("99")
        assert plan.price_for(BillingCycle.MONTHLY) == Decimal("1000")
        assert plan.price_for(BillingCycle.ANNUAL) == Decimal("10000")

    def test_limit_for(self):
        plan = PlanFactory(max_shops=3, max_products=None)

        assert plan.limit_for(Resource.SHOPS) == 3
        assert plan.limit_for("products") is None

    def test_grants_trial(self):
        assert PlanFactory(code="trial", trial_days=14).grants_trial
        assert not PlanFactory(code="starter", trial_days=0).grants_trial

    def test_one_active_plan_per_code(self):
        PlanFactory(code="silver")
        PlanFactory(code="silver", status=PlanStatus.DEPRECATED)

        with pytest.raises(IntegrityError), transaction.atomic():
            Plan.objects.create(
                code="silver",
                name="Silver again",
                status=PlanStatus.ACTIVE,
            )


@pytest.mark.django_db
class TestSubscription:
    def test_grace_date_requires_past_due(self, now):
        with pytest.raises(IntegrityError), transaction.atomic():
            SubscriptionFactory(
                status=SubscriptionStatus.ACTIVE,
                grace_period_end_date=now + timedelta(days=7),
            )

    def test_past_due_requires_grace_date(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            SubscriptionFactory(status=SubscriptionStatus.PAST_DUE)

    def test_period_must_end_after_it_starts(self, now):
        with pytest.raises(IntegrityError), transaction.atomic():
            SubscriptionFactory(current_period_start=now, current_period_end=now)

    def test_one_subscription_per_tenant(self):
        sub = SubscriptionFactory()

        with pytest.raises(IntegrityError), transaction.atomic():
            SubscriptionFactory(tenant=sub.tenant)

    def test_clear_pending_upgrade(self, now):
        gold = PlanFactory(code="gold")
        sub = SubscriptionFactory(
            pending_upgrade_plan=gold,
            pending_upgrade_billing_cycle=BillingCycle.ANNUAL,
            pending_upgrade_requested_at=now,
            pending_upgrade_expires_at=now + timedelta(hours=48),
        )
        assert sub.has_pending_upgrade

        sub.clear_pending_upgrade()

        assert not sub.has_pending_upgrade
        assert sub.pending_upgrade_billing_cycle == ""
        assert sub.pending_upgrade_expires_at is None

    def test_str(self):
        sub = SubscriptionFactory(tenant__name="Mama Mboga")
        sub.refresh_from_db()

        assert str(sub) == "Mama Mboga - starter (active)"
