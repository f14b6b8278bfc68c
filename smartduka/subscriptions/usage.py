"""
Usage guard: plan limits for shops, employees and products.

Collaborators call ``enforce_limit`` before creating a limited resource and
``increment_usage``/``decrement_usage`` after the create or delete commits.

Usage:
    usage_guard.enforce_limit(tenant.id, Resource.PRODUCTS)
    product.save()
    usage_guard.increment_usage(tenant.id, Resource.PRODUCTS)
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from dataclasses import dataclass

from smartduka.subscriptions.clock import get_clock
from smartduka.subscriptions.constants import COUNTER_FIELDS
from smartduka.subscriptions.constants import USABLE_STATUSES
from smartduka.subscriptions.constants import Resource
from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.exceptions import LimitExceededError
from smartduka.subscriptions.exceptions import NoActiveSubscriptionError
from smartduka.subscriptions.exceptions import SubscriptionNotUsableError
from smartduka.subscriptions.lifecycle import project
from smartduka.subscriptions.store import SubscriptionStore

logger = logging.getLogger(__name__)

NO_SUBSCRIPTION_MESSAGE = "No active subscription. Please subscribe to a plan."

NOT_USABLE_MESSAGES = {
    SubscriptionStatus.PENDING_PAYMENT: (
        "Payment required to activate your subscription."
    ),
    SubscriptionStatus.PAST_DUE: (
        "Your subscription payment is overdue. Please pay to restore access."
    ),
    SubscriptionStatus.SUSPENDED: (
        "Your subscription has been suspended. Contact support."
    ),
    SubscriptionStatus.CANCELLED: "Your subscription has been cancelled.",
    SubscriptionStatus.EXPIRED: (
        "Your subscription has expired. Please renew to continue."
    ),
}


@dataclass(frozen=True)
class LimitCheckResult:
    allowed: bool
    current: int
    limit: int | None
    remaining: int | None
    message: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class UsageGuard:
    def __init__(self, store: SubscriptionStore | None = None, clock=None):
        self.store = store or SubscriptionStore()
        self.clock = clock or get_clock()

    def check_limit(self, tenant_id, resource: str, increment: int = 1):
        """
        Whether ``increment`` more of ``resource`` fits the tenant's plan.
        Reads only.
        """
        result, _status = self._check(tenant_id, Resource(resource), increment)
        return result

    def _check(self, tenant_id, resource: Resource, increment: int):
        record = self.store.get(tenant_id)
        if record is None:
            result = LimitCheckResult(
                allowed=False,
                current=0,
                limit=0,
                remaining=0,
                message=NO_SUBSCRIPTION_MESSAGE,
            )
            return result, None

        current = getattr(record, COUNTER_FIELDS[resource])
        limit = record.plan.limit_for(resource)
        remaining = None if limit is None else max(0, limit - current)

        status = project(record, self.clock.now()).status
        if status not in USABLE_STATUSES:
            result = LimitCheckResult(
                allowed=False,
                current=current,
                limit=limit,
                remaining=remaining,
                message=NOT_USABLE_MESSAGES[status],
            )
        elif limit is None or current + increment <= limit:
            result = LimitCheckResult(
                allowed=True,
                current=current,
                limit=limit,
                remaining=remaining,
            )
        else:
            result = LimitCheckResult(
                allowed=False,
                current=current,
                limit=limit,
                remaining=remaining,
                message=(
                    f"You have reached your {resource.label} limit "
                    f"({current}/{limit}). Upgrade your plan to add more."
                ),
            )
        return result, status

    def enforce_limit(self, tenant_id, resource: str, increment: int = 1):
        """
        Like ``check_limit`` but raises on denial.

        Raises:
            NoActiveSubscriptionError: the tenant has no subscription.
            SubscriptionNotUsableError: the status does not allow new usage.
            LimitExceededError: the increment would pass the plan limit.
        """
        resource = Resource(resource)
        result, status = self._check(tenant_id, resource, increment)
        if result.allowed:
            return result
        if status is None:
            raise NoActiveSubscriptionError(result.message)
        if status not in USABLE_STATUSES:
            raise SubscriptionNotUsableError(status, result.message)
        logger.warning(
            "Limit reached for tenant=%s resource=%s (%s/%s)",
            tenant_id,
            resource,
            result.current,
            result.limit,
        )
        raise LimitExceededError(resource, result.current, result.limit, result.message)

    def increment_usage(self, tenant_id, resource: str, count: int = 1) -> None:
        if count <= 0:
            return
        self.store.increment_counter(tenant_id, resource, count)

    def decrement_usage(self, tenant_id, resource: str, count: int = 1) -> None:
        """Decrease a counter, never below zero."""
        if count <= 0:
            return
        self.store.decrement_counter(tenant_id, resource, count)

    def sync_usage_counts(self, tenant_id, counts: dict[str, int]) -> None:
        """Overwrite counters with the true counts."""
        for resource, count in counts.items():
            if count < 0:
                msg = f"Usage count for {resource} cannot be negative: {count}"
                raise ValueError(msg)
        self.store.overwrite_counters(tenant_id, counts)
        logger.info("Synced usage counts for tenant=%s: %s", tenant_id, counts)

    def get_usage(self, tenant_id) -> dict:
        """Current, limit and remaining for every resource."""
        record = self.store.get(tenant_id)
        if record is None:
            raise NoActiveSubscriptionError(NO_SUBSCRIPTION_MESSAGE)
        usage = {}
        for resource in Resource:
            current = getattr(record, COUNTER_FIELDS[resource])
            limit = record.plan.limit_for(resource)
            usage[resource.value] = {
                "current": current,
                "limit": limit,
                "remaining": None if limit is None else max(0, limit - current),
            }
        return usage


usage_guard = UsageGuard()
