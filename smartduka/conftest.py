from datetime import UTC
from datetime import datetime

import pytest

from smartduka.subscriptions.clock import FrozenClock
from smartduka.subscriptions.lifecycle import LifecycleEngine
from smartduka.tenants.models import Tenant
from smartduka.tenants.tests.factories import TenantFactory

FROZEN_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def now() -> datetime:
    return FROZEN_NOW


@pytest.fixture
def clock(now) -> FrozenClock:
    return FrozenClock(now)


@pytest.fixture
def plans(db) -> dict:
    """The seeded plan catalog, keyed by plan code."""
    from smartduka.subscriptions.constants import PlanStatus
    from smartduka.subscriptions.management.commands.seed_plans import PLAN_CONFIG
    from smartduka.subscriptions.models import Plan

    return {
        code: Plan.objects.get_or_create(
            code=code,
            status=PlanStatus.ACTIVE,
            defaults=config,
        )[0]
        for code, config in PLAN_CONFIG.items()
    }


@pytest.fixture
def engine(clock, plans) -> LifecycleEngine:
    return LifecycleEngine(clock=clock)


@pytest.fixture
def tenant(db) -> Tenant:
    return TenantFactory()
