"""
Subscription lifecycle engine.

This module owns every change to a subscription's status, billing period and
grace deadline. Changes come from three sources:

- billing events (payment succeeded/failed) drained from the inbox,
- the clock (period, trial and grace deadlines passing),
- explicit requests (onboarding, cancel, reactivate, upgrade, audit repairs).

The clock rules are pure functions (``next_clock_step``, ``settle``) so the
access evaluator can project a record's effective status without writing and
the reconciliation audit can reuse the same grace arithmetic.

Every write happens inside ``transaction.atomic`` on a row locked with
``select_for_update`` and is saved through the store's version check. A
version conflict is retried once with fresh state before it propagates.

Usage:
    engine = LifecycleEngine()
    engine.start_subscription(tenant)
    engine.apply_billing_event(event)
    engine.tick(tenant.id)
    engine.run_cycle()  # inbox first, then clock
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from datetime import timedelta
from functools import partial
from typing import TYPE_CHECKING
from typing import assert_never

from dateutil.relativedelta import relativedelta
from django.db import DatabaseError
from django.db import transaction

from smartduka.subscriptions.catalog import PlanCatalog
from smartduka.subscriptions.clock import get_clock
from smartduka.subscriptions.constants import REACTIVATABLE_STATUSES
from smartduka.subscriptions.constants import BillingCycle
from smartduka.subscriptions.constants import BillingEventType
from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.constants import TransitionTrigger
from smartduka.subscriptions.constants import get_setting
from smartduka.subscriptions.exceptions import ClockOrFeedUnavailableError
from smartduka.subscriptions.exceptions import ConcurrentModificationError
from smartduka.subscriptions.exceptions import InvalidTransitionError
from smartduka.subscriptions.history import get_transition_recorder
from smartduka.subscriptions.models import BillingEvent
from smartduka.subscriptions.signals import notify_transition
from smartduka.subscriptions.store import SubscriptionStore

if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterable

    from smartduka.subscriptions.models import Plan
    from smartduka.subscriptions.models import Subscription
    from smartduka.tenants.models import Tenant

logger = logging.getLogger(__name__)

# Upper bound on clock steps applied in one evaluation.
MAX_CLOCK_STEPS = len(SubscriptionStatus)

PERIOD_FIELDS = ("current_period_start", "current_period_end")
PENDING_UPGRADE_FIELDS = (
    "pending_upgrade_plan",
    "pending_upgrade_billing_cycle",
    "pending_upgrade_requested_at",
    "pending_upgrade_expires_at",
)


def grace_days() -> timedelta:
    return timedelta(days=get_setting("SUBSCRIPTION_GRACE_PERIOD_DAYS"))


def period_end_for(
    start: datetime,
    billing_cycle: str,
    number_of_days: int = 1,
) -> datetime:
    """End of a billing period beginning at ``start``."""
    cycle = BillingCycle(billing_cycle)
    match cycle:
        case BillingCycle.DAILY:
            return start + timedelta(days=max(number_of_days, 1))
        case BillingCycle.MONTHLY:
            return start + relativedelta(months=1)
        case BillingCycle.ANNUAL:
            return start + relativedelta(years=1)
        case _:
            assert_never(cycle)


def grace_outcome(
    period_end: datetime,
    now: datetime,
    *,
    auto_renew: bool,
) -> tuple[SubscriptionStatus, datetime | None]:
    """
    Where an active subscription whose period ended at ``period_end`` belongs.

    Entering grace gives the tenant the full window from ``now``. A record
    first looked at after ``period_end`` plus the window goes straight to
    suspended.
    """
    if not auto_renew:
        return SubscriptionStatus.EXPIRED, None
    if now >= period_end + grace_days():
        return SubscriptionStatus.SUSPENDED, None
    return SubscriptionStatus.PAST_DUE, now + grace_days()


# =============================================================================
# Pure clock rules
# =============================================================================


@dataclass(frozen=True)
class LifecycleState:
    """The part of a record the clock rules look at."""

    status: SubscriptionStatus
    current_period_end: datetime | None
    trial_end_date: datetime | None
    grace_period_end_date: datetime | None
    auto_renew: bool

    @classmethod
    def from_record(cls, record: Subscription) -> LifecycleState:
        return cls(
            status=SubscriptionStatus(record.status),
            current_period_end=record.current_period_end,
            trial_end_date=record.trial_end_date,
            grace_period_end_date=record.grace_period_end_date,
            auto_renew=record.auto_renew,
        )


@dataclass(frozen=True)
class ClockStep:
    status: SubscriptionStatus
    grace_period_end_date: datetime | None
    reason: str


def next_clock_step(state: LifecycleState, now: datetime) -> ClockStep | None:
    """The single clock-driven transition due for ``state`` at ``now``."""
    status = state.status
    match status:
        case SubscriptionStatus.TRIAL:
            deadlines = [
                d for d in (state.trial_end_date, state.current_period_end) if d
            ]
            if deadlines and now >= min(deadlines):
                return ClockStep(SubscriptionStatus.EXPIRED, None, "Trial ended")
        case SubscriptionStatus.ACTIVE:
            if state.current_period_end and now >= state.current_period_end:
                to_status, grace_end = grace_outcome(
                    state.current_period_end,
                    now,
                    auto_renew=state.auto_renew,
                )
                return ClockStep(to_status, grace_end, "Billing period ended")
        case SubscriptionStatus.PAST_DUE:
            if state.grace_period_end_date and now >= state.grace_period_end_date:
                return ClockStep(
                    SubscriptionStatus.SUSPENDED,
                    None,
                    "Grace period ended",
                )
        case (
            SubscriptionStatus.PENDING_PAYMENT
            | SubscriptionStatus.SUSPENDED
            | SubscriptionStatus.CANCELLED
            | SubscriptionStatus.EXPIRED
        ):
            return None
        case _:
            assert_never(status)
    return None


def settle(
    state: LifecycleState,
    now: datetime,
) -> tuple[LifecycleState, list[ClockStep]]:
    """Apply clock steps until none is due."""
    steps = []
    for _ in range(MAX_CLOCK_STEPS):
        step = next_clock_step(state, now)
        if step is None:
            break
        steps.append(step)
        state = replace(
            state,
            status=step.status,
            grace_period_end_date=step.grace_period_end_date,
        )
    return state, steps


def project(record: Subscription, now: datetime) -> LifecycleState:
    """The state ``record`` should be in at ``now``. Never writes."""
    state, _steps = settle(LifecycleState.from_record(record), now)
    return state


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class Transition:
    tenant_id: int
    from_status: str
    to_status: str
    trigger: str
    reason: str
    occurred_at: datetime


@dataclass
class Change:
    """Fields a mutation touched, plus why."""

    fields: set[str]
    reason: str = ""


@dataclass
class SweepResult:
    """Outcome of a batch pass over the inbox or the clock."""

    evaluated: int = 0
    transitioned: int = 0
    errors: list[dict] = field(default_factory=list)
    deferred: bool = False
    deferred_reason: str = ""

    def add_error(self, tenant_id, error: Exception) -> None:
        self.errors.append(
            {
                "tenant_id": tenant_id,
                "error": str(error),
                "type": type(error).__name__,
            },
        )


# =============================================================================
# Billing-event feed
# =============================================================================


class InboxBillingFeed:
    """
    Billing events read from the ``BillingEvent`` inbox table.

    Unreachable storage is reported as ``ClockOrFeedUnavailableError`` so the
    engine defers instead of acting on a partial view.
    """

    def pending(self, tenant_id=None) -> list[BillingEvent]:
        queryset = BillingEvent.objects.filter(processed_at__isnull=True)
        if tenant_id is not None:
            queryset = queryset.filter(tenant_id=tenant_id)
        try:
            return list(queryset.order_by("received_at", "id"))
        except DatabaseError as exc:
            raise ClockOrFeedUnavailableError(
                "Billing event inbox could not be read.",
            ) from exc

    def mark_processed(self, event: BillingEvent, processed_at: datetime) -> None:
        event.processed_at = processed_at
        event.attempts += 1
        event.last_error = ""
        event.save(update_fields=["processed_at", "attempts", "last_error"])

    def mark_failed(self, event: BillingEvent, error: Exception) -> None:
        event.attempts += 1
        event.last_error = str(error)
        event.save(update_fields=["attempts", "last_error"])


# =============================================================================
# Engine
# =============================================================================


class LifecycleEngine:
    def __init__(
        self,
        store: SubscriptionStore | None = None,
        catalog: PlanCatalog | None = None,
        clock=None,
        recorder=None,
    ):
        self.store = store or SubscriptionStore()
        self.catalog = catalog or PlanCatalog()
        self.clock = clock or get_clock()
        self.recorder = recorder or get_transition_recorder()

    def now(self) -> datetime:
        try:
            return self.clock.now()
        except Exception as exc:
            raise ClockOrFeedUnavailableError("Clock could not be read.") from exc

    # -------------------------------------------------------------------------
    # Mutation plumbing
    # -------------------------------------------------------------------------

    def _mutate(
        self,
        tenant_id,
        mutation: Callable[[Subscription, datetime], Change | None],
        *,
        trigger: str,
        now: datetime | None = None,
        nowait: bool = False,
    ) -> tuple[Subscription, Change | None]:
        """
        Apply ``mutation`` to the locked record, retrying once on conflict.

        With ``nowait`` a record locked by another transaction raises
        ``RecordLockedError`` instead of waiting.
        """
        kwargs = {"trigger": trigger, "now": now, "nowait": nowait}
        try:
            return self._mutate_once(tenant_id, mutation, **kwargs)
        except ConcurrentModificationError:
            logger.info(
                "Retrying %s mutation for tenant=%s with fresh state",
                trigger,
                tenant_id,
            )
            return self._mutate_once(tenant_id, mutation, **kwargs)

    def _mutate_once(self, tenant_id, mutation, *, trigger, now, nowait):
        with transaction.atomic():
            record = self.store.lock(tenant_id, nowait=nowait)
            now = now or self.now()
            from_status = record.status
            change = mutation(record, now)
            if change is None:
                return record, None
            fields = set(change.fields)
            if record.status != from_status:
                fields.add("status")
            self.store.save(record, fields)
            if record.status != from_status:
                self._record_transition(
                    record,
                    from_status=from_status,
                    trigger=trigger,
                    reason=change.reason,
                    occurred_at=now,
                )
            return record, change

    def _record_transition(
        self,
        record: Subscription,
        *,
        from_status: str,
        trigger: str,
        reason: str,
        occurred_at: datetime,
    ) -> Transition:
        transition = Transition(
            tenant_id=record.tenant_id,
            from_status=str(from_status or ""),
            to_status=str(record.status),
            trigger=str(trigger),
            reason=reason,
            occurred_at=occurred_at,
        )
        self.recorder.record(transition)
        transaction.on_commit(partial(notify_transition, transition))
        logger.info(
            "Subscription for tenant=%s moved %s -> %s (%s)",
            record.tenant_id,
            transition.from_status or "new",
            transition.to_status,
            trigger,
            extra={
                "tenant_id": record.tenant_id,
                "from_status": transition.from_status,
                "to_status": transition.to_status,
                "trigger": transition.trigger,
            },
        )
        return transition

    def _start_period(self, record: Subscription, start: datetime) -> None:
        record.current_period_start = start
        record.current_period_end = period_end_for(
            start,
            record.billing_cycle,
            record.number_of_days,
        )

    def _snapshot_price(self, record: Subscription) -> None:
        record.current_price = record.plan.price_for(
            record.billing_cycle,
            record.number_of_days,
        )

    # -------------------------------------------------------------------------
    # Onboarding
    # -------------------------------------------------------------------------

    def start_subscription(
        self,
        tenant: Tenant,
        plan_code: str | None = None,
        *,
        billing_cycle: str = BillingCycle.MONTHLY,
        number_of_days: int = 1,
        auto_renew: bool = True,
        trigger: str = TransitionTrigger.ONBOARDING,
        reason: str = "",
    ) -> Subscription:
        """
        Create the subscription record for a new tenant.

        Without a plan the tenant gets a trial on the trial plan. A
        pre-selected plan starts in trial when it grants one, otherwise the
        record waits for its first payment.
        """
        now = self.now()
        if plan_code is None:
            plan = self.catalog.trial_plan()
        else:
            plan = self.catalog.get_by_code(plan_code)

        fields = {
            "tenant": tenant,
            "plan": plan,
            "plan_code": plan.code,
            "billing_cycle": BillingCycle(billing_cycle),
            "number_of_days": max(number_of_days, 1),
            "auto_renew": auto_renew,
            "current_price": plan.price_for(billing_cycle, number_of_days),
        }
        if plan_code is None or plan.grants_trial:
            trial_days = plan.trial_days or get_setting(
                "SUBSCRIPTION_TRIAL_DURATION_DAYS",
            )
            trial_end = now + timedelta(days=trial_days)
            fields.update(
                status=SubscriptionStatus.TRIAL,
                current_period_start=now,
                current_period_end=trial_end,
                trial_end_date=trial_end,
                is_trial_used=True,
            )
            reason = reason or f"{trial_days}-day trial started"
        else:
            fields["status"] = SubscriptionStatus.PENDING_PAYMENT
            reason = reason or "Awaiting first payment"

        with transaction.atomic():
            existing = self.store.get(tenant.pk)
            if existing is not None:
                raise InvalidTransitionError(
                    existing.status,
                    "Tenant already has a subscription.",
                )
            record = self.store.create(**fields)
            self._record_transition(
                record,
                from_status="",
                trigger=trigger,
                reason=reason,
                occurred_at=now,
            )
        return record

    # -------------------------------------------------------------------------
    # Billing events
    # -------------------------------------------------------------------------

    def apply_billing_event(self, event: BillingEvent) -> Subscription:
        event_type = BillingEventType(event.event_type)
        match event_type:
            case BillingEventType.PAYMENT_SUCCEEDED:
                return self.record_payment(
                    event.tenant_id,
                    amount=event.amount,
                    paid_at=event.received_at,
                )
            case BillingEventType.PAYMENT_FAILED:
                return self.record_failed_payment(event.tenant_id)
            case _:
                assert_never(event_type)

    def record_payment(self, tenant_id, *, amount, paid_at: datetime) -> Subscription:
        """
        Apply a successful payment. Payment wins over any clock-driven
        downgrade: every status ends up active.
        """

        def mutation(record: Subscription, now: datetime) -> Change:
            was = SubscriptionStatus(record.status)
            fields = {
                *PERIOD_FIELDS,
                *PENDING_UPGRADE_FIELDS,
                "grace_period_end_date",
                "cancelled_at",
                "cancel_reason",
                "failed_payment_attempts",
                "last_payment_date",
                "last_payment_amount",
                "current_price",
            }

            upgraded = self._take_pending_upgrade(record, paid_at)
            if upgraded:
                fields.update({"plan", "plan_code", "billing_cycle"})

            if (
                was == SubscriptionStatus.ACTIVE
                and record.current_period_end
                and not upgraded
            ):
                # Early renewal stacks onto the current period.
                start = max(record.current_period_end, paid_at)
            else:
                start = paid_at
            self._start_period(record, start)

            if was == SubscriptionStatus.CANCELLED:
                record.auto_renew = True
                fields.add("auto_renew")
            record.status = SubscriptionStatus.ACTIVE
            record.grace_period_end_date = None
            record.cancelled_at = None
            record.cancel_reason = ""
            record.failed_payment_attempts = 0
            record.last_payment_date = paid_at
            record.last_payment_amount = amount
            self._snapshot_price(record)
            return Change(fields, reason=f"Payment of {amount} received")

        record, _change = self._mutate(
            tenant_id,
            mutation,
            trigger=TransitionTrigger.PAYMENT_SUCCEEDED,
        )
        return record

    def _take_pending_upgrade(self, record: Subscription, paid_at: datetime) -> bool:
        """Switch plans if an unexpired upgrade is waiting. Always clears it."""
        plan = record.pending_upgrade_plan
        expires_at = record.pending_upgrade_expires_at
        cycle = record.pending_upgrade_billing_cycle
        record.clear_pending_upgrade()
        if plan is None:
            return False
        if expires_at is not None and paid_at >= expires_at:
            logger.info(
                "Discarded expired upgrade to %s for tenant=%s",
                plan.code,
                record.tenant_id,
            )
            return False
        record.plan = plan
        record.plan_code = plan.code
        if cycle:
            record.billing_cycle = cycle
        logger.info("Applied upgrade to %s for tenant=%s", plan.code, record.tenant_id)
        return True

    def record_failed_payment(self, tenant_id) -> Subscription:
        """
        Count a failed payment. An active subscription that keeps failing
        enters its grace period before its billing period ends.
        """
        max_attempts = get_setting("SUBSCRIPTION_MAX_FAILED_PAYMENT_ATTEMPTS")

        def mutation(record: Subscription, now: datetime) -> Change:
            record.failed_payment_attempts += 1
            fields = {"failed_payment_attempts"}
            period_open = (
                record.current_period_end is None or now < record.current_period_end
            )
            if (
                record.status == SubscriptionStatus.ACTIVE
                and record.failed_payment_attempts >= max_attempts
                and period_open
            ):
                record.status = SubscriptionStatus.PAST_DUE
                record.grace_period_end_date = now + grace_days()
                fields.add("grace_period_end_date")
            return Change(
                fields,
                reason=f"{record.failed_payment_attempts} failed payment attempt(s)",
            )

        record, _change = self._mutate(
            tenant_id,
            mutation,
            trigger=TransitionTrigger.PAYMENT_FAILED,
        )
        return record

    def process_billing_events(self, tenant_id=None, feed=None) -> SweepResult:
        """
        Drain the billing-event inbox in receipt order.

        A failing event is left unprocessed for the next run and reported;
        the rest of the batch continues. An unreadable feed or clock defers
        the whole batch.
        """
        feed = feed or InboxBillingFeed()
        result = SweepResult()
        try:
            events = feed.pending(tenant_id)
            self.now()
        except ClockOrFeedUnavailableError as exc:
            logger.warning("Deferring billing events: %s", exc.detail)
            result.deferred = True
            result.deferred_reason = exc.detail
            return result

        for event in events:
            result.evaluated += 1
            try:
                with transaction.atomic():
                    self.apply_billing_event(event)
                    feed.mark_processed(event, self.now())
            except ClockOrFeedUnavailableError as exc:
                logger.warning("Deferring remaining billing events: %s", exc.detail)
                result.deferred = True
                result.deferred_reason = exc.detail
                break
            except Exception as exc:
                logger.exception(
                    "Failed to apply billing event %s for tenant=%s",
                    event.reference,
                    event.tenant_id,
                )
                feed.mark_failed(event, exc)
                result.add_error(event.tenant_id, exc)
            else:
                result.transitioned += 1
        return result

    # -------------------------------------------------------------------------
    # Clock
    # -------------------------------------------------------------------------

    def _clock_mutation(self, only_from: Iterable[str] | None = None):
        allowed = set(only_from) if only_from is not None else None

        def mutation(record: Subscription, now: datetime) -> Change | None:
            fields = set()
            reasons = []
            expires_at = record.pending_upgrade_expires_at
            if record.has_pending_upgrade and expires_at and now >= expires_at:
                record.clear_pending_upgrade()
                fields.update(PENDING_UPGRADE_FIELDS)
                reasons.append("Pending upgrade expired")

            if allowed is None or record.status in allowed:
                state, steps = settle(LifecycleState.from_record(record), now)
                if steps:
                    record.status = state.status
                    record.grace_period_end_date = state.grace_period_end_date
                    fields.add("grace_period_end_date")
                    reasons.extend(step.reason for step in steps)

            if not fields:
                return None
            return Change(fields, reason="; ".join(reasons))

        return mutation

    def tick(self, tenant_id, now: datetime | None = None) -> Subscription:
        """Apply whatever clock-driven transitions are due for one tenant."""
        record, _change = self._mutate(
            tenant_id,
            self._clock_mutation(),
            trigger=TransitionTrigger.CLOCK,
            now=now,
        )
        return record

    def evaluate_all(self) -> SweepResult:
        """Clock sweep over every record time can change."""
        result = SweepResult()
        try:
            now = self.now()
        except ClockOrFeedUnavailableError as exc:
            logger.warning("Deferring clock sweep: %s", exc.detail)
            result.deferred = True
            result.deferred_reason = exc.detail
            return result

        tenant_ids = list(self.store.evaluable().values_list("tenant_id", flat=True))
        for tenant_id in tenant_ids:
            result.evaluated += 1
            try:
                _record, change = self._mutate(
                    tenant_id,
                    self._clock_mutation(),
                    trigger=TransitionTrigger.CLOCK,
                    now=now,
                )
            except Exception as exc:
                logger.exception("Clock evaluation failed for tenant=%s", tenant_id)
                result.add_error(tenant_id, exc)
                continue
            if change is not None:
                result.transitioned += 1
        logger.info(
            "Clock sweep evaluated %d subscription(s), changed %d, %d error(s)",
            result.evaluated,
            result.transitioned,
            len(result.errors),
        )
        return result

    def run_cycle(self, tenant_id=None) -> tuple[SweepResult, SweepResult]:
        """Billing events first, then the clock, so payments win."""
        events = self.process_billing_events(tenant_id)
        if events.deferred:
            # Unseen payments must not be overtaken by clock downgrades.
            clock = SweepResult(deferred=True, deferred_reason=events.deferred_reason)
        elif tenant_id is None:
            clock = self.evaluate_all()
        else:
            clock = SweepResult(evaluated=1)
            try:
                _record, change = self._mutate(
                    tenant_id,
                    self._clock_mutation(),
                    trigger=TransitionTrigger.CLOCK,
                )
            except ClockOrFeedUnavailableError as exc:
                clock.deferred = True
                clock.deferred_reason = exc.detail
            else:
                clock.transitioned = int(change is not None)
        return events, clock

    # -------------------------------------------------------------------------
    # Explicit requests
    # -------------------------------------------------------------------------

    def cancel(self, tenant_id, reason: str = "") -> Subscription:
        """Cancel from any status. Usage counters are kept."""

        def mutation(record: Subscription, now: datetime) -> Change:
            if record.status == SubscriptionStatus.CANCELLED:
                raise InvalidTransitionError(
                    record.status,
                    "Subscription is already cancelled.",
                )
            record.status = SubscriptionStatus.CANCELLED
            record.cancelled_at = now
            record.cancel_reason = reason
            record.auto_renew = False
            record.grace_period_end_date = None
            record.clear_pending_upgrade()
            return Change(
                {
                    "cancelled_at",
                    "cancel_reason",
                    "auto_renew",
                    "grace_period_end_date",
                    *PENDING_UPGRADE_FIELDS,
                },
                reason=reason or "Cancelled on request",
            )

        record, _change = self._mutate(
            tenant_id,
            mutation,
            trigger=TransitionTrigger.CANCEL,
        )
        return record

    def reactivate(self, tenant_id) -> Subscription:
        """
        Bring back a cancelled or expired subscription.

        A cancellation whose paid period has not run out resumes for the rest
        of that period. Otherwise a tenant that never had a trial and never
        paid gets the plan's trial; everyone else starts a fresh period.
        """

        def mutation(record: Subscription, now: datetime) -> Change:
            if record.status not in REACTIVATABLE_STATUSES:
                raise InvalidTransitionError(
                    record.status,
                    f"Cannot reactivate a subscription that is {record.status}.",
                )
            fields = {
                *PERIOD_FIELDS,
                "cancelled_at",
                "cancel_reason",
                "auto_renew",
                "trial_end_date",
                "is_trial_used",
                "current_price",
                "failed_payment_attempts",
            }
            period_left = (
                record.status == SubscriptionStatus.CANCELLED
                and record.current_period_end is not None
                and now < record.current_period_end
            )
            if period_left:
                in_trial = (
                    record.trial_end_date is not None
                    and record.trial_end_date >= record.current_period_end
                )
                record.status = (
                    SubscriptionStatus.TRIAL if in_trial else SubscriptionStatus.ACTIVE
                )
                reason = "Reactivated for the remainder of the period"
            elif self._trial_available(record, record.plan):
                trial_end = now + timedelta(days=record.plan.trial_days)
                record.status = SubscriptionStatus.TRIAL
                record.current_period_start = now
                record.current_period_end = trial_end
                record.trial_end_date = trial_end
                record.is_trial_used = True
                reason = "Reactivated into trial"
            else:
                record.status = SubscriptionStatus.ACTIVE
                self._start_period(record, now)
                reason = "Reactivated with a new billing period"

            record.cancelled_at = None
            record.cancel_reason = ""
            record.auto_renew = True
            record.failed_payment_attempts = 0
            self._snapshot_price(record)
            return Change(fields, reason=reason)

        record, _change = self._mutate(
            tenant_id,
            mutation,
            trigger=TransitionTrigger.REACTIVATE,
        )
        return record

    def _trial_available(self, record: Subscription, plan: Plan) -> bool:
        return (
            plan.grants_trial
            and not record.is_trial_used
            and record.last_payment_date is None
        )

    def request_upgrade(
        self,
        tenant_id,
        plan_code: str,
        billing_cycle: str | None = None,
    ) -> Subscription:
        """
        Park an upgrade until it is paid for. The plan only changes when a
        payment arrives before the request expires.
        """
        plan = self.catalog.get_by_code(plan_code)
        ttl = timedelta(hours=get_setting("SUBSCRIPTION_PENDING_UPGRADE_TTL_HOURS"))

        def mutation(record: Subscription, now: datetime) -> Change:
            cycle = BillingCycle(billing_cycle or record.billing_cycle)
            if plan.pk == record.plan_id and cycle == record.billing_cycle:
                raise InvalidTransitionError(
                    record.status,
                    f"Already on {plan.name} ({cycle.label}).",
                )
            record.pending_upgrade_plan = plan
            record.pending_upgrade_billing_cycle = cycle
            record.pending_upgrade_requested_at = now
            record.pending_upgrade_expires_at = now + ttl
            return Change(set(PENDING_UPGRADE_FIELDS), reason="Upgrade requested")

        record, _change = self._mutate(
            tenant_id,
            mutation,
            trigger=TransitionTrigger.UPGRADE,
        )
        logger.info(
            "Upgrade to %s requested for tenant=%s",
            plan.code,
            tenant_id,
        )
        return record

    def cancel_pending_upgrade(self, tenant_id) -> Subscription:
        def mutation(record: Subscription, now: datetime) -> Change:
            if not record.has_pending_upgrade:
                raise InvalidTransitionError(record.status, "No pending upgrade.")
            record.clear_pending_upgrade()
            return Change(set(PENDING_UPGRADE_FIELDS), reason="Upgrade withdrawn")

        record, _change = self._mutate(
            tenant_id,
            mutation,
            trigger=TransitionTrigger.UPGRADE,
        )
        return record

    # -------------------------------------------------------------------------
    # Repairs used by the reconciliation audit
    # -------------------------------------------------------------------------

    def repair_daily_period(self, tenant_id) -> Change | None:
        """
        Recompute a daily period from its start and expire the record if the
        corrected period is already over.
        """

        def mutation(record: Subscription, now: datetime) -> Change | None:
            if (
                record.billing_cycle != BillingCycle.DAILY
                or record.current_period_start is None
                or record.is_trial_governed
            ):
                return None
            expected_end = period_end_for(
                record.current_period_start,
                BillingCycle.DAILY,
                record.number_of_days,
            )
            if record.current_period_end == expected_end:
                return None
            record.current_period_end = expected_end
            fields = {"current_period_end"}
            reason = f"Daily period corrected to {record.number_of_days} day(s)"
            still_running = record.status in {
                SubscriptionStatus.ACTIVE,
                SubscriptionStatus.TRIAL,
                SubscriptionStatus.PAST_DUE,
            }
            if still_running and expected_end <= now:
                record.status = SubscriptionStatus.EXPIRED
                record.grace_period_end_date = None
                fields.add("grace_period_end_date")
                reason += "; corrected period already ended"
            return Change(fields, reason=reason)

        _record, change = self._mutate(
            tenant_id,
            mutation,
            trigger=TransitionTrigger.AUDIT,
            nowait=True,
        )
        return change

    def reconcile_clock(self, tenant_id, status: str) -> Change | None:
        """
        Settle a record the audit found stuck in ``status``.

        Like the other audit repairs it never waits on a row lock held by
        another transaction.
        """
        _record, change = self._mutate(
            tenant_id,
            self._clock_mutation(only_from={status}),
            trigger=TransitionTrigger.AUDIT,
            nowait=True,
        )
        return change

    def sync_plan_code(self, tenant_id) -> Change | None:
        def mutation(record: Subscription, now: datetime) -> Change | None:
            if record.plan_code == record.plan.code:
                return None
            old_code = record.plan_code
            record.plan_code = record.plan.code
            return Change(
                {"plan_code"},
                reason=f"Plan code {old_code} replaced by {record.plan.code}",
            )

        _record, change = self._mutate(
            tenant_id,
            mutation,
            trigger=TransitionTrigger.AUDIT,
            nowait=True,
        )
        return change
