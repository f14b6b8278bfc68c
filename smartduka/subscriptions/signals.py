"""
Post-commit notification of subscription transitions.

The lifecycle engine schedules ``notify_transition`` with
``transaction.on_commit``, so receivers only ever see committed state and a
failing receiver cannot undo or block the transition.

Receivers are called with ``sender=Subscription`` and ``transition``, a
``smartduka.subscriptions.lifecycle.Transition``.
"""

import logging

from django.dispatch import Signal

from smartduka.subscriptions.models import Subscription

logger = logging.getLogger(__name__)

subscription_transitioned = Signal()


def notify_transition(transition) -> None:
    responses = subscription_transitioned.send_robust(
        sender=Subscription,
        transition=transition,
    )
    for receiver, response in responses:
        if isinstance(response, Exception):
            logger.error(
                "Transition receiver %s failed for tenant=%s (%s -> %s)",
                getattr(receiver, "__qualname__", repr(receiver)),
                transition.tenant_id,
                transition.from_status,
                transition.to_status,
                exc_info=response,
            )
