from datetime import timedelta
from decimal import Decimal

import factory
from django.utils import timezone
from factory.django import DjangoModelFactory

from smartduka.subscriptions.constants import BillingCycle
from smartduka.subscriptions.constants import BillingEventType
from smartduka.subscriptions.constants import PlanStatus
from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.models import BillingEvent
from smartduka.subscriptions.models import Plan
from smartduka.subscriptions.models import Subscription
from smartduka.tenants.tests.factories import TenantFactory


class PlanFactory(DjangoModelFactory):
    class Meta:
        model = Plan
        django_get_or_create = ["code", "status"]

    code = "starter"
    name = factory.LazyAttribute(lambda o: o.code.title())
    status = PlanStatus.ACTIVE
    daily_price = Decimal("99")
    monthly_price = Decimal("1000")
    annual_price = Decimal("10000")
    max_shops = 1
    max_employees = 2
    max_products = 500
    trial_days = 0


class SubscriptionFactory(DjangoModelFactory):
    """
    Builds records directly, bypassing the lifecycle engine, so tests can
    start from any state (including drifted ones).
    """

    class Meta:
        model = Subscription

    tenant = factory.SubFactory(TenantFactory)
    plan = factory.SubFactory(PlanFactory)
    plan_code = factory.LazyAttribute(lambda o: o.plan.code)
    billing_cycle = BillingCycle.MONTHLY
    status = SubscriptionStatus.ACTIVE
    current_period_start = factory.LazyFunction(
        lambda: timezone.now() - timedelta(days=10),
    )
    current_period_end = factory.LazyAttribute(
        lambda o: o.current_period_start + timedelta(days=30),
    )
    current_price = factory.LazyAttribute(lambda o: o.plan.monthly_price)


class BillingEventFactory(DjangoModelFactory):
    class Meta:
        model = BillingEvent

    tenant = factory.SubFactory(TenantFactory)
    event_type = BillingEventType.PAYMENT_SUCCEEDED
    amount = Decimal("1000")
    received_at = factory.LazyFunction(timezone.now)
    reference = factory.Sequence(lambda n: f"MPESA{n:08d}")
