"""
Persistence gateway for subscription records.

All reads and writes of ``Subscription`` rows go through ``SubscriptionStore``.
Lifecycle writes are optimistic: ``save`` only updates the row if its
``version`` still matches what was read, and bumps it. Usage counters are
updated with single SQL expressions so concurrent calls never lose an
increment.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import DatabaseError
from django.db.models import F
from django.db.models import IntegerField
from django.db.models import Q
from django.db.models.functions import Greatest
from django.utils import timezone

from smartduka.subscriptions.constants import CLOCK_DRIVEN_STATUSES
from smartduka.subscriptions.constants import COUNTER_FIELDS
from smartduka.subscriptions.constants import Resource
from smartduka.subscriptions.exceptions import ConcurrentModificationError
from smartduka.subscriptions.exceptions import RecordLockedError
from smartduka.subscriptions.exceptions import RecordNotFoundError
from smartduka.subscriptions.models import Subscription
from smartduka.tenants.models import Tenant

if TYPE_CHECKING:
    from collections.abc import Iterable

    from django.db.models import QuerySet

logger = logging.getLogger(__name__)


class SubscriptionStore:
    def _queryset(self) -> QuerySet[Subscription]:
        return Subscription.objects.select_related("plan", "tenant")

    def get(self, tenant_id) -> Subscription | None:
        return self._queryset().filter(tenant_id=tenant_id).first()

    def require(self, tenant_id) -> Subscription:
        record = self.get(tenant_id)
        if record is None:
            raise RecordNotFoundError(tenant_id)
        return record

    def lock(self, tenant_id, *, nowait: bool = False) -> Subscription:
        """
        Re-read a record with a row lock. Must be called inside
        ``transaction.atomic``.

        With ``nowait`` a row held by another transaction raises
        ``RecordLockedError`` instead of waiting for it.
        """
        try:
            return (
                self._queryset()
                .select_for_update(nowait=nowait, of=("self",))
                .get(tenant_id=tenant_id)
            )
        except Subscription.DoesNotExist as exc:
            raise RecordNotFoundError(tenant_id) from exc
        except DatabaseError as exc:
            if not nowait:
                raise
            logger.info("Subscription for tenant=%s is locked, not waiting", tenant_id)
            raise RecordLockedError(tenant_id) from exc

    def create(self, **fields) -> Subscription:
        return Subscription.objects.create(**fields)

    def save(self, record: Subscription, fields: Iterable[str]) -> Subscription:
        """
        Write ``fields`` of ``record`` if nobody else has written it since it
        was read.

        Raises:
            ConcurrentModificationError: the stored version moved on.
        """
        values = {name: getattr(record, name) for name in fields}
        values["modified"] = timezone.now()
        updated = Subscription.objects.filter(
            pk=record.pk,
            version=record.version,
        ).update(**values, version=F("version") + 1)
        if not updated:
            logger.warning(
                "Version conflict saving subscription for tenant=%s at version=%s",
                record.tenant_id,
                record.version,
            )
            raise ConcurrentModificationError(record.tenant_id, record.version)
        record.version += 1
        record.modified = values["modified"]
        return record

    # Usage counters
    # -------------------------------------------------------------------------

    def increment_counter(self, tenant_id, resource: str, count: int) -> None:
        field = COUNTER_FIELDS[Resource(resource)]
        self._update_counters(tenant_id, {field: F(field) + count})

    def decrement_counter(self, tenant_id, resource: str, count: int) -> None:
        field = COUNTER_FIELDS[Resource(resource)]
        self._update_counters(
            tenant_id,
            {field: Greatest(F(field) - count, 0, output_field=IntegerField())},
        )

    def overwrite_counters(self, tenant_id, counts: dict[str, int]) -> None:
        values = {
            COUNTER_FIELDS[Resource(resource)]: count
            for resource, count in counts.items()
        }
        if values:
            self._update_counters(tenant_id, values)

    def _update_counters(self, tenant_id, values: dict) -> None:
        updated = Subscription.objects.filter(tenant_id=tenant_id).update(**values)
        if not updated:
            raise RecordNotFoundError(tenant_id)

    # Batch reads
    # -------------------------------------------------------------------------

    def evaluable(self) -> QuerySet[Subscription]:
        """Records that the passage of time alone can change."""
        return (
            self._queryset()
            .filter(
                Q(status__in=CLOCK_DRIVEN_STATUSES)
                | Q(pending_upgrade_plan__isnull=False),
            )
            .order_by("pk")
        )

    def all_records(self) -> QuerySet[Subscription]:
        return self._queryset().order_by("pk")

    def count(self) -> int:
        return Subscription.objects.count()

    def tenants_without_subscription(self) -> QuerySet[Tenant]:
        return Tenant.objects.filter(
            is_active=True,
            subscription__isnull=True,
        ).order_by("pk")


store = SubscriptionStore()
