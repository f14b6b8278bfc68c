"""
Constants and closed enumerations for the subscription lifecycle.

Every status, access level and resource name used by the subscriptions app is
defined here. Code elsewhere should match on these members rather than on
string literals so an unhandled value fails loudly.
"""

from django.conf import settings
from django.db import models


class SubscriptionStatus(models.TextChoices):
    """Lifecycle state of a tenant's subscription."""

    PENDING_PAYMENT = "pending_payment", "Pending payment"
    TRIAL = "trial", "Trial"
    ACTIVE = "active", "Active"
    PAST_DUE = "past_due", "Past due"
    SUSPENDED = "suspended", "Suspended"
    CANCELLED = "cancelled", "Cancelled"
    EXPIRED = "expired", "Expired"


# Statuses in which the tenant may create shops/employees/products.
USABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL})

# Statuses whose outcome can change just because time passes.
CLOCK_DRIVEN_STATUSES = frozenset(
    {
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
    },
)

# Statuses a reactivation request may start from.
REACTIVATABLE_STATUSES = frozenset(
    {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
)


class BillingCycle(models.TextChoices):
    DAILY = "daily", "Daily"
    MONTHLY = "monthly", "Monthly"
    ANNUAL = "annual", "Annual"


class PlanStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    INACTIVE = "inactive", "Inactive"
    DEPRECATED = "deprecated", "Deprecated"


class AccessLevel(models.TextChoices):
    FULL = "full", "Full"
    READ_ONLY = "read_only", "Read only"
    BLOCKED = "blocked", "Blocked"
    NONE = "none", "None"


class Operation(models.TextChoices):
    READ = "read", "Read"
    WRITE = "write", "Write"
    DELETE = "delete", "Delete"
    POS = "pos", "Point of sale"
    REPORTS = "reports", "Reports"


# Operations still permitted while a tenant is in its grace period.
READ_ONLY_OPERATIONS = frozenset({Operation.READ, Operation.REPORTS})


class Resource(models.TextChoices):
    """Plan-limited resources tracked by usage counters."""

    SHOPS = "shops", "shops/branches"
    EMPLOYEES = "employees", "employees"
    PRODUCTS = "products", "products"


# Subscription counter field and Plan limit field per resource.
COUNTER_FIELDS = {
    Resource.SHOPS: "current_shop_count",
    Resource.EMPLOYEES: "current_employee_count",
    Resource.PRODUCTS: "current_product_count",
}
LIMIT_FIELDS = {
    Resource.SHOPS: "max_shops",
    Resource.EMPLOYEES: "max_employees",
    Resource.PRODUCTS: "max_products",
}


class BillingEventType(models.TextChoices):
    PAYMENT_SUCCEEDED = "payment_succeeded", "Payment succeeded"
    PAYMENT_FAILED = "payment_failed", "Payment failed"


class TransitionTrigger(models.TextChoices):
    """What caused a status transition; stored on the transition history."""

    ONBOARDING = "onboarding", "Onboarding"
    CLOCK = "clock", "Clock"
    PAYMENT_SUCCEEDED = "payment_succeeded", "Payment succeeded"
    PAYMENT_FAILED = "payment_failed", "Payment failed"
    CANCEL = "cancel", "Cancel request"
    REACTIVATE = "reactivate", "Reactivation request"
    UPGRADE = "upgrade", "Upgrade request"
    AUDIT = "audit", "Reconciliation audit"


class WarningType(models.TextChoices):
    EXPIRING_SOON = "expiring_soon", "Expiring soon"
    PAST_DUE = "past_due", "Past due"
    SUSPENDED = "suspended", "Suspended"
    EXPIRED = "expired", "Expired"


class WarningSeverity(models.TextChoices):
    INFO = "info", "Info"
    WARNING = "warning", "Warning"
    ERROR = "error", "Error"
    CRITICAL = "critical", "Critical"


# Where the console sends tenants to resolve a warning.
SUBSCRIPTION_ADMIN_URL = "/admin/subscription"
SUBSCRIPTION_SETTINGS_URL = "/settings?tab=subscription"
SELECT_PLAN_URL = "/select-plan"

# Defaults for the SUBSCRIPTION_* Django settings.
DEFAULTS = {
    "SUBSCRIPTION_GRACE_PERIOD_DAYS": 7,
    "SUBSCRIPTION_TRIAL_DURATION_DAYS": 14,
    "SUBSCRIPTION_TRIAL_PLAN_CODE": "trial",
    "SUBSCRIPTION_MAX_FAILED_PAYMENT_ATTEMPTS": 3,
    "SUBSCRIPTION_PENDING_UPGRADE_TTL_HOURS": 48,
    "SUBSCRIPTION_AUDIT_RECORD_TIMEOUT_SECONDS": 30.0,
    "SUBSCRIPTION_TRANSITION_RECORDER": (
        "smartduka.subscriptions.history.ModelTransitionRecorder"
    ),
    "SUBSCRIPTION_CLOCK": "smartduka.subscriptions.clock.SystemClock",
}


def get_setting(name: str):
    """Return a SUBSCRIPTION_* setting, falling back to its default."""
    return getattr(settings, name, DEFAULTS[name])
