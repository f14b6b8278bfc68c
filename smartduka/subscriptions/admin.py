"""
Django admin configuration for subscription models.

Lifecycle fields are read-only here: status, periods and counters only
change through the lifecycle engine and the usage guard. The admin actions
call the engine so history and notifications stay consistent.
"""

from django.contrib import admin
from django.contrib import messages

from smartduka.subscriptions.exceptions import SubscriptionError
from smartduka.subscriptions.lifecycle import LifecycleEngine
from smartduka.subscriptions.models import BillingEvent
from smartduka.subscriptions.models import Plan
from smartduka.subscriptions.models import Subscription
from smartduka.subscriptions.models import SubscriptionTransition


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    list_display = [
        "code",
        "name",
        "status",
        "daily_price",
        "monthly_price",
        "annual_price",
        "max_shops",
        "max_employees",
        "max_products",
        "trial_days",
        "display_order",
    ]
    list_filter = ["status"]
    list_editable = ["display_order"]
    ordering = ["display_order"]
    search_fields = ["code", "name"]

    fieldsets = [
        (None, {"fields": ["code", "name", "description", "status"]}),
        ("Pricing (KES)", {"fields": ["daily_price", "monthly_price", "annual_price"]}),
        (
            "Limits",
            {
                "fields": ["max_shops", "max_employees", "max_products"],
                "description": "Leave blank for unlimited.",
            },
        ),
        ("Trial", {"fields": ["trial_days"]}),
        ("Display", {"fields": ["display_order"]}),
    ]


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = [
        "tenant",
        "plan_code",
        "status",
        "billing_cycle",
        "current_period_end",
        "grace_period_end_date",
        "auto_renew",
    ]
    list_filter = ["status", "billing_cycle", "plan"]
    search_fields = ["tenant__name", "tenant__slug", "plan_code"]
    raw_id_fields = ["tenant"]
    readonly_fields = [
        "status",
        "current_period_start",
        "current_period_end",
        "grace_period_end_date",
        "trial_end_date",
        "is_trial_used",
        "current_price",
        "current_shop_count",
        "current_employee_count",
        "current_product_count",
        "pending_upgrade_plan",
        "pending_upgrade_billing_cycle",
        "pending_upgrade_requested_at",
        "pending_upgrade_expires_at",
        "cancelled_at",
        "cancel_reason",
        "last_payment_date",
        "last_payment_amount",
        "failed_payment_attempts",
        "version",
        "created",
        "modified",
    ]
    actions = ["apply_clock"]

    @admin.action(description="Apply due clock transitions")
    def apply_clock(self, request, queryset):
        engine = LifecycleEngine()
        changed = 0
        for subscription in queryset:
            try:
                before = subscription.status
                after = engine.tick(subscription.tenant_id).status
            except SubscriptionError as exc:
                self.message_user(
                    request,
                    f"{subscription.tenant}: {exc.detail}",
                    level=messages.ERROR,
                )
                continue
            changed += int(before != after)
        self.message_user(request, f"{changed} subscription(s) changed status.")

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(BillingEvent)
class BillingEventAdmin(admin.ModelAdmin):
    list_display = [
        "reference",
        "tenant",
        "event_type",
        "amount",
        "received_at",
        "processed_at",
        "attempts",
    ]
    list_filter = ["event_type", ("processed_at", admin.EmptyFieldListFilter)]
    search_fields = ["reference", "tenant__name"]
    raw_id_fields = ["tenant"]
    readonly_fields = ["processed_at", "attempts", "last_error"]
    date_hierarchy = "received_at"


@admin.register(SubscriptionTransition)
class SubscriptionTransitionAdmin(admin.ModelAdmin):
    list_display = ["tenant", "from_status", "to_status", "trigger", "occurred_at"]
    list_filter = ["trigger", "to_status"]
    search_fields = ["tenant__name", "reason"]
    date_hierarchy = "occurred_at"

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
