import django.db.models.deletion
import django.utils.timezone
import model_utils.fields
from decimal import Decimal
from django.db import migrations
from django.db import models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("tenants", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "code",
                    models.CharField(
                        help_text="Plan identifier. Exactly one active plan per code.",
                        max_length=32,
                    ),
                ),
                (
                    "name",
                    models.CharField(
                        help_text="Display name for the plan.",
                        max_length=64,
                    ),
                ),
                ("description", models.TextField(blank=True, default="")),
                (
                    "daily_price",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        max_digits=12,
                    ),
                ),
                (
                    "monthly_price",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        max_digits=12,
                    ),
                ),
                (
                    "annual_price",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        max_digits=12,
                    ),
                ),
                (
                    "max_shops",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Maximum shops/branches. Null = unlimited.",
                        null=True,
                    ),
                ),
                (
                    "max_employees",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Maximum employees. Null = unlimited.",
                        null=True,
                    ),
                ),
                (
                    "max_products",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Maximum products. Null = unlimited.",
                        null=True,
                    ),
                ),
                (
                    "trial_days",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Length of the free trial this plan grants. 0 = no trial.",
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("inactive", "Inactive"),
                            ("deprecated", "Deprecated"),
                        ],
                        default="active",
                        max_length=16,
                    ),
                ),
                (
                    "display_order",
                    models.IntegerField(
                        default=0,
                        help_text="Order in which plans appear on the plan picker.",
                    ),
                ),
            ],
            options={
                "ordering": ["display_order", "code"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "active")),
                        fields=("code",),
                        name="unique_active_plan_code",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "created",
                    model_utils.fields.AutoCreatedField(
                        default=django.utils.timezone.now,
                        editable=False,
                        verbose_name="created",
                    ),
                ),
                (
                    "modified",
                    model_utils.fields.AutoLastModifiedField(
                        default=django.utils.timezone.now,
                        editable=False,
                        verbose_name="modified",
                    ),
                ),
                ("plan_code", models.CharField(max_length=32)),
                (
                    "billing_cycle",
                    models.CharField(
                        choices=[
                            ("daily", "Daily"),
                            ("monthly", "Monthly"),
                            ("annual", "Annual"),
                        ],
                        default="monthly",
                        max_length=16,
                    ),
                ),
                (
                    "number_of_days",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Length of a daily billing period in days.",
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending_payment", "Pending payment"),
                            ("trial", "Trial"),
                            ("active", "Active"),
                            ("past_due", "Past due"),
                            ("suspended", "Suspended"),
                            ("cancelled", "Cancelled"),
                            ("expired", "Expired"),
                        ],
                        default="pending_payment",
                        max_length=20,
                    ),
                ),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                (
                    "grace_period_end_date",
                    models.DateTimeField(
                        blank=True,
                        help_text="Suspension deadline. Set only while past due.",
                        null=True,
                    ),
                ),
                ("trial_end_date", models.DateTimeField(blank=True, null=True)),
                ("is_trial_used", models.BooleanField(default=False)),
                (
                    "current_price",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        help_text="Price snapshot taken at the last billing event.",
                        max_digits=12,
                    ),
                ),
                ("auto_renew", models.BooleanField(default=True)),
                ("current_shop_count", models.PositiveIntegerField(default=0)),
                ("current_employee_count", models.PositiveIntegerField(default=0)),
                ("current_product_count", models.PositiveIntegerField(default=0)),
                (
                    "pending_upgrade_billing_cycle",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("daily", "Daily"),
                            ("monthly", "Monthly"),
                            ("annual", "Annual"),
                        ],
                        default="",
                        max_length=16,
                    ),
                ),
                (
                    "pending_upgrade_requested_at",
                    models.DateTimeField(blank=True, null=True),
                ),
                (
                    "pending_upgrade_expires_at",
                    models.DateTimeField(blank=True, null=True),
                ),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_reason", models.TextField(blank=True, default="")),
                ("last_payment_date", models.DateTimeField(blank=True, null=True)),
                (
                    "last_payment_amount",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        max_digits=12,
                        null=True,
                    ),
                ),
                ("failed_payment_attempts", models.PositiveIntegerField(default=0)),
                ("version", models.PositiveIntegerField(default=1)),
                (
                    "pending_upgrade_plan",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="pending_upgrades",
                        to="subscriptions.plan",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="subscriptions.plan",
                    ),
                ),
                (
                    "tenant",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscription",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(
                        fields=["status"],
                        name="subscriptio_status_8c1f2e_idx",
                    ),
                    models.Index(
                        fields=["current_period_end"],
                        name="subscriptio_current_4b7d9a_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            ("current_period_start__isnull", True),
                            ("current_period_end__isnull", True),
                            (
                                "current_period_end__gt",
                                models.F("current_period_start"),
                            ),
                            _connector="OR",
                        ),
                        name="subscription_period_end_after_start",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(
                                ("status", "past_due"),
                                ("grace_period_end_date__isnull", False),
                            ),
                            models.Q(
                                models.Q(("status", "past_due"), _negated=True),
                                ("grace_period_end_date__isnull", True),
                            ),
                            _connector="OR",
                        ),
                        name="subscription_grace_only_when_past_due",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingEvent",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "created",
                    model_utils.fields.AutoCreatedField(
                        default=django.utils.timezone.now,
                        editable=False,
                        verbose_name="created",
                    ),
                ),
                (
                    "modified",
                    model_utils.fields.AutoLastModifiedField(
                        default=django.utils.timezone.now,
                        editable=False,
                        verbose_name="modified",
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("payment_succeeded", "Payment succeeded"),
                            ("payment_failed", "Payment failed"),
                        ],
                        max_length=32,
                    ),
                ),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("received_at", models.DateTimeField()),
                ("reference", models.CharField(max_length=128, unique=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True, default="")),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="billing_events",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "ordering": ["received_at", "id"],
                "indexes": [
                    models.Index(
                        fields=["processed_at", "received_at"],
                        name="subscriptio_process_2e6a1c_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionTransition",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "from_status",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("pending_payment", "Pending payment"),
                            ("trial", "Trial"),
                            ("active", "Active"),
                            ("past_due", "Past due"),
                            ("suspended", "Suspended"),
                            ("cancelled", "Cancelled"),
                            ("expired", "Expired"),
                        ],
                        help_text="Empty when the subscription was created.",
                        max_length=20,
                    ),
                ),
                (
                    "to_status",
                    models.CharField(
                        choices=[
                            ("pending_payment", "Pending payment"),
                            ("trial", "Trial"),
                            ("active", "Active"),
                            ("past_due", "Past due"),
                            ("suspended", "Suspended"),
                            ("cancelled", "Cancelled"),
                            ("expired", "Expired"),
                        ],
                        max_length=20,
                    ),
                ),
                (
                    "trigger",
                    models.CharField(
                        choices=[
                            ("onboarding", "Onboarding"),
                            ("clock", "Clock"),
                            ("payment_succeeded", "Payment succeeded"),
                            ("payment_failed", "Payment failed"),
                            ("cancel", "Cancel request"),
                            ("reactivate", "Reactivation request"),
                            ("upgrade", "Upgrade request"),
                            ("audit", "Reconciliation audit"),
                        ],
                        max_length=32,
                    ),
                ),
                ("reason", models.TextField(blank=True, default="")),
                ("occurred_at", models.DateTimeField()),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscription_transitions",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "ordering": ["-occurred_at", "-id"],
                "indexes": [
                    models.Index(
                        fields=["tenant", "occurred_at"],
                        name="subscriptio_tenant__7f3b5d_idx",
                    ),
                ],
            },
        ),
    ]
