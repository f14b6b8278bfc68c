"""
Subscription models for SmartDuka.

Relationship: Tenant ──1:1── Subscription ──N:1── Plan

- Plan is the catalog of priced plans and their resource limits. Several
  versions of a plan code may exist but only one may be ``active``.
- Subscription is the per-tenant lifecycle record. Only the lifecycle engine
  changes its status and period fields; only the usage guard changes its
  counters. Rows are never deleted: cancellation is a status.
- BillingEvent is the inbox of payment outcomes delivered by the gateway
  integration. The lifecycle engine drains it in receipt order.
- SubscriptionTransition is the status history written alongside each
  transition.
"""

from decimal import Decimal

from django.db import models
from django.db.models import F
from django.db.models import Q
from model_utils.models import TimeStampedModel

from smartduka.subscriptions.constants import LIMIT_FIELDS
from smartduka.subscriptions.constants import BillingCycle
from smartduka.subscriptions.constants import BillingEventType
from smartduka.subscriptions.constants import PlanStatus
from smartduka.subscriptions.constants import Resource
from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.constants import TransitionTrigger


class Plan(models.Model):
    """
    Catalog entry for a priced plan.

    Prices are in KES. Limits of ``None`` mean unlimited.

    Usage:
        plan.price_for(BillingCycle.DAILY, number_of_days=3)
        plan.limit_for(Resource.PRODUCTS)
    """

    code = models.CharField(
        max_length=32,
        help_text="Plan identifier. Exactly one active plan per code.",
    )
    name = models.CharField(max_length=64, help_text="Display name for the plan.")
    description = models.TextField(blank=True, default="")

    daily_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
    )
    monthly_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
    )
    annual_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
    )

    max_shops = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum shops/branches. Null = unlimited.",
    )
    max_employees = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum employees. Null = unlimited.",
    )
    max_products = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum products. Null = unlimited.",
    )

    trial_days = models.PositiveIntegerField(
        default=0,
        help_text="Length of the free trial this plan grants. 0 = no trial.",
    )
    status = models.CharField(
        max_length=16,
        choices=PlanStatus.choices,
        default=PlanStatus.ACTIVE,
    )
    display_order = models.IntegerField(
        default=0,
        help_text="Order in which plans appear on the plan picker.",
    )

    class Meta:
        ordering = ["display_order", "code"]
        constraints = [
            models.UniqueConstraint(
                fields=["code"],
                condition=Q(status=PlanStatus.ACTIVE),
                name="unique_active_plan_code",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.code})"

    @property
    def grants_trial(self) -> bool:
        return self.trial_days > 0

    def price_for(self, billing_cycle: str, number_of_days: int = 1) -> Decimal:
        """Price of one billing period on this plan."""
        match BillingCycle(billing_cycle):
            case BillingCycle.DAILY:
                return self.daily_price * max(number_of_days, 1)
            case BillingCycle.MONTHLY:
                return self.monthly_price
            case BillingCycle.ANNUAL:
                return self.annual_price

    def limit_for(self, resource: str) -> int | None:
        return getattr(self, LIMIT_FIELDS[Resource(resource)])


class Subscription(TimeStampedModel):
    """
    Lifecycle record for one tenant.

    ``plan`` is canonical; ``plan_code`` is a denormalised copy that the
    reconciliation audit repairs when it drifts. ``version`` increases on every
    lifecycle write and guards against lost updates.
    """

    tenant = models.OneToOneField(
        "tenants.Tenant",
        on_delete=models.PROTECT,
        related_name="subscription",
    )
    plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    plan_code = models.CharField(max_length=32)
    billing_cycle = models.CharField(
        max_length=16,
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    number_of_days = models.PositiveIntegerField(
        default=1,
        help_text="Length of a daily billing period in days.",
    )
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.PENDING_PAYMENT,
    )

    # Billing period, half-open [start, end)
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    grace_period_end_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Suspension deadline. Set only while past due.",
    )

    # Trial tracking
    trial_end_date = models.DateTimeField(null=True, blank=True)
    is_trial_used = models.BooleanField(default=False)

    current_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Price snapshot taken at the last billing event.",
    )
    auto_renew = models.BooleanField(default=True)

    # Usage counters, mirrors of the real counts
    current_shop_count = models.PositiveIntegerField(default=0)
    current_employee_count = models.PositiveIntegerField(default=0)
    current_product_count = models.PositiveIntegerField(default=0)

    # Upgrade requested but not yet paid for
    pending_upgrade_plan = models.ForeignKey(
        Plan,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="pending_upgrades",
    )
    pending_upgrade_billing_cycle = models.CharField(
        max_length=16,
        choices=BillingCycle.choices,
        blank=True,
        default="",
    )
    pending_upgrade_requested_at = models.DateTimeField(null=True, blank=True)
    pending_upgrade_expires_at = models.DateTimeField(null=True, blank=True)

    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.TextField(blank=True, default="")

    # Payment history summary
    last_payment_date = models.DateTimeField(null=True, blank=True)
    last_payment_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
    )
    failed_payment_attempts = models.PositiveIntegerField(default=0)

    version = models.PositiveIntegerField(default=1)

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="subscriptio_status_8c1f2e_idx"),
            models.Index(
                fields=["current_period_end"],
                name="subscriptio_current_4b7d9a_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(current_period_start__isnull=True)
                    | Q(current_period_end__isnull=True)
                    | Q(current_period_end__gt=F("current_period_start"))
                ),
                name="subscription_period_end_after_start",
            ),
            models.CheckConstraint(
                condition=(
                    Q(
                        status=SubscriptionStatus.PAST_DUE,
                        grace_period_end_date__isnull=False,
                    )
                    | (
                        ~Q(status=SubscriptionStatus.PAST_DUE)
                        & Q(grace_period_end_date__isnull=True)
                    )
                ),
                name="subscription_grace_only_when_past_due",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.tenant} - {self.plan_code} ({self.status})"

    @property
    def is_trial_governed(self) -> bool:
        """A running trial's period ends at the trial end, whatever the cycle."""
        return (
            self.status == SubscriptionStatus.TRIAL
            and self.trial_end_date is not None
        )

    @property
    def has_pending_upgrade(self) -> bool:
        return self.pending_upgrade_plan_id is not None

    def clear_pending_upgrade(self) -> None:
        self.pending_upgrade_plan = None
        self.pending_upgrade_billing_cycle = ""
        self.pending_upgrade_requested_at = None
        self.pending_upgrade_expires_at = None


class BillingEvent(TimeStampedModel):
    """
    A payment outcome delivered by the gateway integration.

    ``reference`` is the gateway's transaction id and makes delivery
    idempotent. ``processed_at`` stays null until the lifecycle engine has
    applied the event.
    """

    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.PROTECT,
        related_name="billing_events",
    )
    event_type = models.CharField(max_length=32, choices=BillingEventType.choices)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    received_at = models.DateTimeField()
    reference = models.CharField(max_length=128, unique=True)

    processed_at = models.DateTimeField(null=True, blank=True)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["received_at", "id"]
        indexes = [
            models.Index(
                fields=["processed_at", "received_at"],
                name="subscriptio_process_2e6a1c_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.reference}: {self.event_type} {self.amount}"


class SubscriptionTransition(models.Model):
    """One status change of a tenant's subscription."""

    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.PROTECT,
        related_name="subscription_transitions",
    )
    from_status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        blank=True,
        help_text="Empty when the subscription was created.",
    )
    to_status = models.CharField(max_length=20, choices=SubscriptionStatus.choices)
    trigger = models.CharField(max_length=32, choices=TransitionTrigger.choices)
    reason = models.TextField(blank=True, default="")
    occurred_at = models.DateTimeField()

    class Meta:
        ordering = ["-occurred_at", "-id"]
        indexes = [
            models.Index(
                fields=["tenant", "occurred_at"],
                name="subscriptio_tenant__7f3b5d_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.tenant_id}: {self.from_status or '-'} -> {self.to_status}"
