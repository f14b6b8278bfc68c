"""
Wall-clock sources for the lifecycle engine.

Services take a clock at construction so tests and replays can pin time.
The default comes from the ``SUBSCRIPTION_CLOCK`` setting.
"""

from datetime import datetime
from datetime import timedelta

from django.utils import timezone
from django.utils.module_loading import import_string

from smartduka.subscriptions.constants import get_setting


class SystemClock:
    def now(self) -> datetime:
        return timezone.now()


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, **kwargs) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now


def get_clock():
    return import_string(get_setting("SUBSCRIPTION_CLOCK"))()
