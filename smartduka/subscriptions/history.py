"""
Transition history capability.

The lifecycle engine hands every status change to a recorder chosen by the
``SUBSCRIPTION_TRANSITION_RECORDER`` setting. ``ModelTransitionRecorder``
writes a ``SubscriptionTransition`` row inside the same transaction as the
change; ``NullTransitionRecorder`` is for deployments that keep no history.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.utils.module_loading import import_string

from smartduka.subscriptions.constants import get_setting
from smartduka.subscriptions.models import SubscriptionTransition

if TYPE_CHECKING:
    from smartduka.subscriptions.lifecycle import Transition


class NullTransitionRecorder:
    def record(self, transition: Transition) -> None:
        return None


class ModelTransitionRecorder:
    def record(self, transition: Transition) -> None:
        SubscriptionTransition.objects.create(
            tenant_id=transition.tenant_id,
            from_status=transition.from_status or "",
            to_status=transition.to_status,
            trigger=transition.trigger,
            reason=transition.reason,
            occurred_at=transition.occurred_at,
        )


def get_transition_recorder():
    return import_string(get_setting("SUBSCRIPTION_TRANSITION_RECORDER"))()
