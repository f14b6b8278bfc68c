"""
Default receivers for ``subscription_transitioned``.

These run after the transition has committed. Delivery failures are logged
by ``notify_transition`` and never affect the subscription.
"""

import logging

from django.conf import settings
from django.core.mail import send_mail
from django.dispatch import receiver

from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.signals import subscription_transitioned
from smartduka.tenants.models import Tenant

logger = logging.getLogger(__name__)

TRANSITION_EMAILS = {
    SubscriptionStatus.ACTIVE: (
        "Your SmartDuka subscription is active",
        "Your subscription is active. Thank you for using SmartDuka.",
    ),
    SubscriptionStatus.PAST_DUE: (
        "Your SmartDuka payment is overdue",
        "Your subscription payment is overdue. You have read-only access "
        "until you pay. Your account will be suspended when the grace "
        "period ends.",
    ),
    SubscriptionStatus.SUSPENDED: (
        "Your SmartDuka subscription is suspended",
        "Your subscription has been suspended. Please pay to restore access.",
    ),
    SubscriptionStatus.EXPIRED: (
        "Your SmartDuka subscription has expired",
        "Your subscription has expired. Please renew to continue.",
    ),
    SubscriptionStatus.CANCELLED: (
        "Your SmartDuka subscription was cancelled",
        "Your subscription has been cancelled. You can reactivate it at any time.",
    ),
}


@receiver(subscription_transitioned)
def email_tenant_on_transition(sender, transition, **kwargs):
    """Tell the tenant by email when their subscription changes status."""
    template = TRANSITION_EMAILS.get(transition.to_status)
    if template is None:
        return

    tenant = Tenant.objects.filter(pk=transition.tenant_id).first()
    if tenant is None or not tenant.email:
        logger.info(
            "No email address for tenant=%s, skipping %s notice",
            transition.tenant_id,
            transition.to_status,
        )
        return

    subject, body = template
    send_mail(
        subject,
        f"Hello {tenant.name},\n\n{body}\n",
        settings.DEFAULT_FROM_EMAIL,
        [tenant.email],
    )
    logger.info(
        "Sent %s notice to tenant=%s",
        transition.to_status,
        transition.tenant_id,
    )
