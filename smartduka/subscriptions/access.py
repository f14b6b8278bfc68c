"""
Access evaluator: what a tenant may do right now, and what to tell them.

Decisions are made from the record's projected status (the status the clock
rules say it should have now), so a tenant is not given extra days just
because the lifecycle sweep has not run yet. Nothing here writes.

If evaluating access itself fails (the database is unreachable, a record is
malformed) the tenant gets full access and the error is logged. Keeping shops
trading is preferred over enforcing billing through a broken check. Tenants
never see the underlying error.

Usage:
    result = access_evaluator.check_access(tenant.id)
    decision = access_evaluator.is_operation_allowed(tenant.id, Operation.WRITE)
    if not decision.allowed:
        return HttpResponseForbidden(decision.reason)
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from typing import TYPE_CHECKING
from typing import assert_never

from smartduka.subscriptions.clock import get_clock
from smartduka.subscriptions.constants import READ_ONLY_OPERATIONS
from smartduka.subscriptions.constants import SELECT_PLAN_URL
from smartduka.subscriptions.constants import SUBSCRIPTION_ADMIN_URL
from smartduka.subscriptions.constants import SUBSCRIPTION_SETTINGS_URL
from smartduka.subscriptions.constants import AccessLevel
from smartduka.subscriptions.constants import BillingCycle
from smartduka.subscriptions.constants import Operation
from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.constants import WarningSeverity
from smartduka.subscriptions.constants import WarningType
from smartduka.subscriptions.lifecycle import LifecycleState
from smartduka.subscriptions.lifecycle import project
from smartduka.subscriptions.store import SubscriptionStore

if TYPE_CHECKING:
    from smartduka.subscriptions.models import Subscription

logger = logging.getLogger(__name__)

NO_SUBSCRIPTION_MESSAGE = (
    "No subscription found. Please subscribe to a plan to continue."
)
FAIL_OPEN_MESSAGE = "Unable to verify subscription. Please try again."


def ceil_days(until: datetime | None, now: datetime) -> int:
    """Whole days left until ``until``, rounded up, never negative."""
    if until is None:
        return 0
    return max(0, math.ceil((until - now) / timedelta(days=1)))


def ceil_hours(until: datetime | None, now: datetime) -> int:
    if until is None:
        return 0
    return max(0, math.ceil((until - now) / timedelta(hours=1)))


@dataclass(frozen=True)
class AccessResult:
    level: AccessLevel
    status: str | None
    message: str
    days_remaining: int = 0
    can_make_payment: bool = True
    days_until_suspension: int | None = None
    grace_period_end_date: datetime | None = None
    subscription: dict | None = None

    @property
    def has_access(self) -> bool:
        return self.level in {AccessLevel.FULL, AccessLevel.READ_ONLY}

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SubscriptionWarning:
    type: WarningType
    severity: WarningSeverity
    title: str
    message: str
    action_required: bool = True
    action_label: str = ""
    action_url: str = ""
    days_remaining: int | None = None
    days_until_suspension: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class OperationDecision:
    allowed: bool
    reason: str = ""


def _summary(record: Subscription) -> dict:
    return {
        "plan_code": record.plan_code,
        "plan_name": record.plan.name,
        "billing_cycle": record.billing_cycle,
        "current_period_start": record.current_period_start,
        "current_period_end": record.current_period_end,
        "auto_renew": record.auto_renew,
    }


class AccessEvaluator:
    def __init__(self, store: SubscriptionStore | None = None, clock=None):
        self.store = store or SubscriptionStore()
        self.clock = clock or get_clock()

    # -------------------------------------------------------------------------
    # Access level
    # -------------------------------------------------------------------------

    def check_access(self, tenant_id) -> AccessResult:
        try:
            return self._check_access(tenant_id)
        except Exception:
            logger.exception(
                "Access check failed for tenant=%s; allowing full access",
                tenant_id,
            )
            return AccessResult(
                level=AccessLevel.FULL,
                status=None,
                message=FAIL_OPEN_MESSAGE,
            )

    def _check_access(self, tenant_id) -> AccessResult:
        record = self.store.get(tenant_id)
        if record is None:
            return AccessResult(
                level=AccessLevel.NONE,
                status=None,
                message=NO_SUBSCRIPTION_MESSAGE,
                can_make_payment=False,
            )

        now = self.clock.now()
        state = project(record, now)
        status = state.status
        summary = _summary(record)
        blocked = {
            "level": AccessLevel.BLOCKED,
            "status": status,
            "subscription": summary,
        }

        match status:
            case SubscriptionStatus.ACTIVE:
                return AccessResult(
                    level=AccessLevel.FULL,
                    status=status,
                    message="Subscription active",
                    days_remaining=ceil_days(record.current_period_end, now),
                    subscription=summary,
                )
            case SubscriptionStatus.TRIAL:
                days = ceil_days(self._trial_end(record), now)
                return AccessResult(
                    level=AccessLevel.FULL,
                    status=status,
                    message=f"Trial period - {days} days remaining",
                    days_remaining=days,
                    subscription=summary,
                )
            case SubscriptionStatus.PAST_DUE:
                days = ceil_days(state.grace_period_end_date, now)
                return AccessResult(
                    level=AccessLevel.READ_ONLY,
                    status=status,
                    message=(
                        f"Payment overdue. {days} days until suspension. "
                        "Please pay to continue operations."
                    ),
                    days_until_suspension=days,
                    grace_period_end_date=state.grace_period_end_date,
                    subscription=summary,
                )
            case SubscriptionStatus.SUSPENDED:
                return AccessResult(
                    message=(
                        "Your subscription has been suspended due to non-payment. "
                        "Please pay your outstanding invoice to restore access."
                    ),
                    **blocked,
                )
            case SubscriptionStatus.EXPIRED:
                if record.status == SubscriptionStatus.TRIAL:
                    message = (
                        "Your free trial has ended. Please upgrade to a paid "
                        "plan to continue using SmartDuka."
                    )
                else:
                    message = (
                        "Your subscription has expired. Please renew to "
                        "continue using SmartDuka."
                    )
                return AccessResult(message=message, **blocked)
            case SubscriptionStatus.CANCELLED:
                return AccessResult(
                    message=(
                        "Your subscription has been cancelled. "
                        "Please reactivate to continue."
                    ),
                    **blocked,
                )
            case SubscriptionStatus.PENDING_PAYMENT:
                return AccessResult(
                    message=(
                        "Your subscription is pending payment. "
                        "Please complete payment to activate."
                    ),
                    **blocked,
                )
            case _:
                assert_never(status)

    @staticmethod
    def _trial_end(record: Subscription) -> datetime | None:
        return record.trial_end_date or record.current_period_end

    def is_operation_allowed(self, tenant_id, operation: str) -> OperationDecision:
        operation = Operation(operation)
        access = self.check_access(tenant_id)
        level = AccessLevel(access.level)
        match level:
            case AccessLevel.FULL:
                return OperationDecision(allowed=True)
            case AccessLevel.READ_ONLY:
                if operation in READ_ONLY_OPERATIONS:
                    return OperationDecision(allowed=True)
                return OperationDecision(
                    allowed=False,
                    reason=(
                        f"{operation.value} operations are disabled during grace "
                        "period. Please pay your outstanding invoice."
                    ),
                )
            case AccessLevel.BLOCKED | AccessLevel.NONE:
                return OperationDecision(allowed=False, reason=access.message)
            case _:
                assert_never(level)

    # -------------------------------------------------------------------------
    # Warnings
    # -------------------------------------------------------------------------

    def get_warnings(self, tenant_id) -> list[SubscriptionWarning]:
        try:
            return self._get_warnings(tenant_id)
        except Exception:
            logger.exception(
                "Could not build subscription warnings for tenant=%s",
                tenant_id,
            )
            return []

    def _get_warnings(self, tenant_id) -> list[SubscriptionWarning]:
        record = self.store.get(tenant_id)
        if record is None:
            return [
                SubscriptionWarning(
                    type=WarningType.EXPIRED,
                    severity=WarningSeverity.CRITICAL,
                    title="No Subscription",
                    message="You need an active subscription to use SmartDuka.",
                    action_label="Choose a Plan",
                    action_url=SELECT_PLAN_URL,
                ),
            ]

        now = self.clock.now()
        state = project(record, now)
        status = state.status
        match status:
            case SubscriptionStatus.ACTIVE:
                warning = self._active_warning(record, now)
            case SubscriptionStatus.TRIAL:
                warning = self._trial_warning(record, now)
            case SubscriptionStatus.PAST_DUE:
                warning = self._past_due_warning(state, now)
            case SubscriptionStatus.SUSPENDED:
                warning = SubscriptionWarning(
                    type=WarningType.SUSPENDED,
                    severity=WarningSeverity.CRITICAL,
                    title="Account Suspended",
                    message=(
                        "Your account has been suspended due to non-payment. "
                        "All shop operations are disabled. Pay now to restore access."
                    ),
                    action_label="Pay Now",
                    action_url=SUBSCRIPTION_ADMIN_URL,
                )
            case SubscriptionStatus.EXPIRED:
                warning = self._expired_warning(record)
            case SubscriptionStatus.CANCELLED:
                warning = SubscriptionWarning(
                    type=WarningType.EXPIRED,
                    severity=WarningSeverity.CRITICAL,
                    title="Subscription Cancelled",
                    message=(
                        "Your subscription has been cancelled. "
                        "Reactivate to continue using SmartDuka."
                    ),
                    action_label="Reactivate",
                    action_url=SUBSCRIPTION_ADMIN_URL,
                )
            case SubscriptionStatus.PENDING_PAYMENT:
                warning = SubscriptionWarning(
                    type=WarningType.EXPIRED,
                    severity=WarningSeverity.CRITICAL,
                    title="Payment Required",
                    message=(
                        "Complete your payment to activate your subscription "
                        "and start using SmartDuka."
                    ),
                    action_label="Complete Payment",
                    action_url=SUBSCRIPTION_ADMIN_URL,
                )
            case _:
                assert_never(status)
        return [warning] if warning else []

    def _active_warning(self, record: Subscription, now: datetime):
        plan_name = record.plan.name
        if record.billing_cycle == BillingCycle.DAILY:
            hours = ceil_hours(record.current_period_end, now)
            if hours <= 2:
                return SubscriptionWarning(
                    type=WarningType.EXPIRING_SOON,
                    severity=WarningSeverity.CRITICAL,
                    title="Daily Subscription Expiring Soon!",
                    message=(
                        f"Your daily subscription expires in {hours} "
                        f"hour{'' if hours == 1 else 's'}! Renew immediately."
                    ),
                    days_remaining=0,
                    action_label="Renew Now",
                    action_url=SUBSCRIPTION_SETTINGS_URL,
                )
            if hours <= 6:
                return SubscriptionWarning(
                    type=WarningType.EXPIRING_SOON,
                    severity=WarningSeverity.WARNING,
                    title="Daily Subscription Expiring",
                    message=(
                        f"Your daily subscription expires in {hours} hours. "
                        "Renew to continue operations."
                    ),
                    days_remaining=0,
                    action_label="Renew Now",
                    action_url=SUBSCRIPTION_SETTINGS_URL,
                )
            return None

        days = ceil_days(record.current_period_end, now)
        if days <= 1:
            return SubscriptionWarning(
                type=WarningType.EXPIRING_SOON,
                severity=WarningSeverity.ERROR,
                title="Subscription Expires Tomorrow",
                message=(
                    f"Your {plan_name} subscription expires tomorrow! "
                    "Renew now to avoid losing access."
                ),
                days_remaining=days,
                action_label="Renew Now",
                action_url=SUBSCRIPTION_SETTINGS_URL,
            )
        if days <= 3:
            return SubscriptionWarning(
                type=WarningType.EXPIRING_SOON,
                severity=WarningSeverity.WARNING,
                title="Subscription Expiring Very Soon",
                message=(
                    f"Your {plan_name} subscription expires in {days} days. "
                    "Renew immediately to continue operations."
                ),
                days_remaining=days,
                action_label="Renew Now",
                action_url=SUBSCRIPTION_SETTINGS_URL,
            )
        if days <= 7:
            return SubscriptionWarning(
                type=WarningType.EXPIRING_SOON,
                severity=WarningSeverity.INFO,
                title="Subscription Expiring Soon",
                message=(
                    f"Your {plan_name} subscription expires in {days} days. "
                    "Renew now to avoid service interruption."
                ),
                days_remaining=days,
                action_required=False,
                action_label="Renew Now",
                action_url=SUBSCRIPTION_SETTINGS_URL,
            )
        return None

    def _trial_warning(self, record: Subscription, now: datetime):
        days = ceil_days(self._trial_end(record), now)
        if days <= 1:
            return SubscriptionWarning(
                type=WarningType.EXPIRING_SOON,
                severity=WarningSeverity.ERROR,
                title="Trial Ends Tomorrow",
                message=(
                    "Your free trial ends tomorrow! Upgrade now to avoid "
                    "losing access to your shop."
                ),
                days_remaining=days,
                action_label="Upgrade Now",
                action_url=SUBSCRIPTION_ADMIN_URL,
            )
        if days <= 3:
            return SubscriptionWarning(
                type=WarningType.EXPIRING_SOON,
                severity=WarningSeverity.WARNING,
                title="Trial Ending Soon",
                message=(
                    f"Your free trial ends in {days} days. Upgrade now to keep "
                    "your data and continue using SmartDuka."
                ),
                days_remaining=days,
                action_label="Upgrade Now",
                action_url=SUBSCRIPTION_ADMIN_URL,
            )
        if days <= 7:
            return SubscriptionWarning(
                type=WarningType.EXPIRING_SOON,
                severity=WarningSeverity.INFO,
                title="Trial Period",
                message=(
                    f"You have {days} days left in your free trial. Explore all "
                    "features and upgrade when ready."
                ),
                days_remaining=days,
                action_required=False,
                action_label="View Plans",
                action_url=SUBSCRIPTION_ADMIN_URL,
            )
        return None

    def _past_due_warning(self, state: LifecycleState, now: datetime):
        days = ceil_days(state.grace_period_end_date, now)
        if days > 0:
            message = (
                f"Your payment is overdue. You have {days} days to pay before "
                "your account is suspended. During this time, you can only "
                "view data."
            )
        else:
            message = "Your payment is overdue. Your account will be suspended soon."
        return SubscriptionWarning(
            type=WarningType.PAST_DUE,
            severity=WarningSeverity.CRITICAL,
            title="Payment Overdue",
            message=message,
            days_until_suspension=days,
            action_label="Pay Now",
            action_url=SUBSCRIPTION_ADMIN_URL,
        )

    def _expired_warning(self, record: Subscription):
        if record.status == SubscriptionStatus.TRIAL:
            return SubscriptionWarning(
                type=WarningType.EXPIRED,
                severity=WarningSeverity.CRITICAL,
                title="Trial Period Ended",
                message=(
                    "Your free trial has ended. Upgrade to a paid plan to "
                    "continue using SmartDuka."
                ),
                days_remaining=0,
                action_label="Upgrade Now",
                action_url=SUBSCRIPTION_ADMIN_URL,
            )
        return SubscriptionWarning(
            type=WarningType.EXPIRED,
            severity=WarningSeverity.CRITICAL,
            title="Subscription Expired",
            message=(
                "Your subscription has expired. Renew now to continue using "
                "SmartDuka."
            ),
            days_remaining=0,
            action_label="Renew Subscription",
            action_url=SUBSCRIPTION_ADMIN_URL,
        )


access_evaluator = AccessEvaluator()
