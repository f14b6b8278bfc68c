"""
Tests for the reconciliation audit.

These tests cover:
- Each of the five checks, in dry-run and live mode
- Agreement between audit repairs and the lifecycle engine's grace arithmetic
- Idempotence of dry and live runs
- Isolation of per-record failures and timeouts
"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from smartduka.subscriptions.audit import CHECKS
from smartduka.subscriptions.audit import ReconciliationAuditor
from smartduka.subscriptions.audit import StaleTrialCheck
from smartduka.subscriptions.constants import BillingCycle
from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.constants import TransitionTrigger
from smartduka.subscriptions.exceptions import RecordLockedError
from smartduka.subscriptions.models import Subscription
from smartduka.subscriptions.models import SubscriptionTransition
from smartduka.subscriptions.tests.factories import SubscriptionFactory
from smartduka.tenants.tests.factories import TenantFactory


@pytest.fixture
def auditor(engine) -> ReconciliationAuditor:
    return ReconciliationAuditor(engine=engine, record_timeout=5)


def _daily(plans, start, end, **kwargs):
    return SubscriptionFactory(
        **{
            "plan": plans["starter"],
            "billing_cycle": BillingCycle.DAILY,
            "number_of_days": 1,
            "current_period_start": start,
            "current_period_end": end,
            **kwargs,
        },
    )


def _stale_trial(plans, now):
    return SubscriptionFactory(
        plan=plans["trial"],
        status=SubscriptionStatus.TRIAL,
        current_period_start=now - timedelta(days=20),
        current_period_end=now - timedelta(days=6),
        trial_end_date=now - timedelta(days=6),
        is_trial_used=True,
    )


def _stale_active(plans, now, *, ended_ago, **kwargs):
    end = now - ended_ago
    return SubscriptionFactory(
        plan=plans["starter"],
        status=SubscriptionStatus.ACTIVE,
        current_period_start=end - timedelta(days=30),
        current_period_end=end,
        **kwargs,
    )


@pytest.mark.django_db
class TestDailyPeriodMismatch:
    def test_period_corrected_and_expired_when_already_over(
        self,
        auditor,
        plans,
        now,
    ):
        start = now - timedelta(days=3)
        sub = _daily(plans, start, start + timedelta(days=30))

        result = auditor.run_check("daily_period_mismatch", dry_run=False)

        assert [i.issue_type for i in result.issues] == ["PERIOD_END_MISMATCH"]
        assert result.fixed == 1
        sub.refresh_from_db()
        assert sub.current_period_end == start + timedelta(days=1)
        assert sub.status == SubscriptionStatus.EXPIRED

    def test_period_corrected_and_kept_active_when_still_running(
        self,
        auditor,
        plans,
        now,
    ):
        start = now - timedelta(hours=2)
        sub = _daily(plans, start, start + timedelta(days=30))

        auditor.run_check("daily_period_mismatch", dry_run=False)

        sub.refresh_from_db()
        assert sub.current_period_end == start + timedelta(days=1)
        assert sub.status == SubscriptionStatus.ACTIVE

    def test_dry_run_reports_without_writing(self, auditor, plans, now):
        start = now - timedelta(days=3)
        sub = _daily(plans, start, start + timedelta(days=30))

        result = auditor.run_check("daily_period_mismatch", dry_run=True)

        assert len(result.issues) == 1
        assert result.fixed == 0
        sub.refresh_from_db()
        assert sub.current_period_end == start + timedelta(days=30)
        assert sub.version == 1

    def test_one_day_tolerance(self, auditor, plans, now):
        start = now - timedelta(hours=5)
        _daily(plans, start, start + timedelta(days=2))

        result = auditor.run_check("daily_period_mismatch")

        assert result.issues == []

    def test_multi_day_period(self, auditor, plans, now):
        start = now - timedelta(days=1)
        sub = _daily(
            plans,
            start,
            start + timedelta(days=30),
            number_of_days=7,
        )

        auditor.run_check("daily_period_mismatch", dry_run=False)

        sub.refresh_from_db()
        assert sub.current_period_end == start + timedelta(days=7)
        assert sub.status == SubscriptionStatus.ACTIVE

    def test_daily_trial_from_onboarding_is_left_alone(
        self,
        engine,
        auditor,
        clock,
        tenant,
    ):
        sub = engine.start_subscription(tenant, billing_cycle=BillingCycle.DAILY)
        clock.advance(days=2)

        report = auditor.run_audit(dry_run=False)

        assert report.issues_found == 0
        sub.refresh_from_db()
        assert sub.status == SubscriptionStatus.TRIAL
        assert sub.current_period_end == sub.trial_end_date
        assert sub.trial_end_date - clock.now() == timedelta(days=12)

    def test_repair_skips_running_trial(self, engine, plans, now):
        sub = _daily(
            plans,
            now - timedelta(days=2),
            now + timedelta(days=12),
            status=SubscriptionStatus.TRIAL,
            trial_end_date=now + timedelta(days=12),
        )

        assert engine.repair_daily_period(sub.tenant_id) is None
        sub.refresh_from_db()
        assert sub.version == 1


@pytest.mark.django_db
class TestStaleStatuses:
    def test_stale_trial_expires(self, auditor, plans, now):
        sub = _stale_trial(plans, now)

        result = auditor.run_check("stale_trial", dry_run=False)

        assert [i.issue_type for i in result.issues] == ["TRIAL_EXPIRED"]
        sub.refresh_from_db()
        assert sub.status == SubscriptionStatus.EXPIRED
        transition = SubscriptionTransition.objects.get(tenant=sub.tenant)
        assert transition.trigger == TransitionTrigger.AUDIT

    def test_running_trial_is_not_stale(self, auditor, plans, now):
        SubscriptionFactory(
            plan=plans["trial"],
            status=SubscriptionStatus.TRIAL,
            current_period_start=now - timedelta(days=2),
            current_period_end=now + timedelta(days=12),
            trial_end_date=now + timedelta(days=12),
        )

        assert auditor.run_check("stale_trial").issues == []

    def test_recently_lapsed_active_enters_grace(self, auditor, plans, now):
        sub = _stale_active(plans, now, ended_ago=timedelta(days=3))

        result = auditor.run_check("stale_active", dry_run=False)

        assert [i.issue_type for i in result.issues] == ["SHOULD_BE_PAST_DUE"]
        sub.refresh_from_db()
        assert sub.status == SubscriptionStatus.PAST_DUE
        assert sub.grace_period_end_date == now + timedelta(days=7)

    def test_long_lapsed_active_is_suspended(self, auditor, plans, now):
        sub = _stale_active(plans, now, ended_ago=timedelta(days=9))

        result = auditor.run_check("stale_active", dry_run=False)

        assert [i.issue_type for i in result.issues] == ["SHOULD_BE_SUSPENDED"]
        sub.refresh_from_db()
        assert sub.status == SubscriptionStatus.SUSPENDED
        assert sub.grace_period_end_date is None

    def test_lapsed_active_without_auto_renew_expires(self, auditor, plans, now):
        sub = _stale_active(
            plans,
            now,
            ended_ago=timedelta(days=1),
            auto_renew=False,
        )

        result = auditor.run_check("stale_active", dry_run=False)

        assert [i.issue_type for i in result.issues] == ["SHOULD_BE_EXPIRED"]
        sub.refresh_from_db()
        assert sub.status == SubscriptionStatus.EXPIRED

    def test_audit_and_clock_agree(self, engine, auditor, plans, now):
        by_audit = _stale_active(plans, now, ended_ago=timedelta(days=2))
        auditor.run_check("stale_active", dry_run=False)

        by_clock = _stale_active(plans, now, ended_ago=timedelta(days=2))
        engine.tick(by_clock.tenant_id)

        by_audit.refresh_from_db()
        by_clock.refresh_from_db()
        assert by_audit.status == by_clock.status
        assert by_audit.grace_period_end_date == by_clock.grace_period_end_date


@pytest.mark.django_db
class TestOrphanedTenant:
    def test_orphan_gets_trial(self, auditor, plans, now):
        tenant = TenantFactory()
        TenantFactory(is_active=False)

        result = auditor.run_check("orphaned_tenant", dry_run=False)

        assert [i.tenant_id for i in result.issues] == [tenant.pk]
        sub = Subscription.objects.get(tenant=tenant)
        assert sub.status == SubscriptionStatus.TRIAL
        assert sub.trial_end_date == now + timedelta(days=14)
        transition = SubscriptionTransition.objects.get(tenant=tenant)
        assert transition.trigger == TransitionTrigger.AUDIT

    def test_dry_run_creates_nothing(self, auditor, plans):
        TenantFactory()

        result = auditor.run_check("orphaned_tenant")

        assert len(result.issues) == 1
        assert not Subscription.objects.exists()


@pytest.mark.django_db
class TestPlanCodeDrift:
    def test_plan_code_resynced(self, auditor, plans):
        sub = SubscriptionFactory(plan=plans["silver"], plan_code="starter")

        result = auditor.run_check("plan_code_drift", dry_run=False)

        assert result.issues[0].detail == "plan_code is starter, plan is silver"
        sub.refresh_from_db()
        assert sub.plan_code == "silver"
        assert not SubscriptionTransition.objects.exists()


@pytest.mark.django_db
class TestFullAudit:
    @pytest.fixture
    def drifted(self, plans, now):
        start = now - timedelta(days=3)
        return [
            _daily(plans, start, start + timedelta(days=30)),
            _stale_trial(plans, now),
            _stale_active(plans, now, ended_ago=timedelta(days=2)),
            SubscriptionFactory(
                plan=plans["gold"],
                plan_code="basic",
                current_period_start=now - timedelta(days=1),
                current_period_end=now + timedelta(days=29),
            ),
            TenantFactory(),
        ]

    def test_report_aggregates_checks(self, auditor, drifted):
        report = auditor.run_audit(dry_run=True)

        assert report.dry_run
        assert report.total_subscriptions == 4
        assert report.issues_found == 5
        assert report.issues_fixed == 0
        assert set(report.checks) == set(CHECKS)
        assert report.errors == []
        assert report.to_dict()["issues_found"] == 5

    def test_dry_run_is_repeatable(self, auditor, drifted):
        first = auditor.run_audit(dry_run=True)
        second = auditor.run_audit(dry_run=True)

        def issues(report):
            return [
                (i.check, i.tenant_id, i.issue_type)
                for result in report.checks.values()
                for i in result.issues
            ]

        assert issues(first) == issues(second)

    def test_live_run_leaves_nothing_to_fix(self, auditor, drifted):
        first = auditor.run_audit(dry_run=False)
        second = auditor.run_audit(dry_run=False)

        assert first.issues_found == 5
        assert first.issues_fixed == 5
        assert second.issues_found == 0
        assert second.issues_fixed == 0

    def test_selected_checks_only(self, auditor, drifted):
        report = auditor.run_audit(checks=["stale_trial", "plan_code_drift"])

        assert list(report.checks) == ["stale_trial", "plan_code_drift"]
        assert report.issues_found == 2

    def test_unknown_check(self, auditor):
        with pytest.raises(ValueError, match="Unknown audit check"):
            auditor.run_check("made_up")

    def test_subscription_stats(self, auditor, drifted):
        stats = auditor.subscription_stats()

        assert stats["total"] == 4
        assert stats["by_status"][SubscriptionStatus.ACTIVE] == 3
        assert stats["by_status"][SubscriptionStatus.TRIAL] == 1
        assert stats["by_billing_cycle"][BillingCycle.DAILY] == 1
        assert stats["expired_but_active"] == 1


@pytest.mark.django_db
class TestRecordIsolation:
    def test_failing_record_is_reported_and_skipped(self, auditor, plans, now):
        bad = _stale_trial(plans, now)
        good = _stale_trial(plans, now)

        class CorruptRecordCheck(StaleTrialCheck):
            def inspect(self, subject, now):
                if subject.tenant_id == bad.tenant_id:
                    raise ValueError("unreadable trial dates")
                return super().inspect(subject, now)

        with patch.dict(CHECKS, {"stale_trial": CorruptRecordCheck}):
            result = auditor.run_check("stale_trial", dry_run=False)

        assert result.errors == [
            {
                "check": "stale_trial",
                "tenant_id": bad.tenant_id,
                "error": "unreadable trial dates",
            },
        ]
        assert result.fixed == 1
        good.refresh_from_db()
        assert good.status == SubscriptionStatus.EXPIRED

    def test_slow_record_times_out(self, engine, plans, now):
        slow = _stale_trial(plans, now)
        fast = _stale_trial(plans, now)
        release = threading.Event()

        class SlowRecordCheck(StaleTrialCheck):
            def inspect(self, subject, now):
                if subject.tenant_id == slow.tenant_id:
                    release.wait(timeout=5)
                return super().inspect(subject, now)

        auditor = ReconciliationAuditor(engine=engine, record_timeout=0.05)
        try:
            with patch.dict(CHECKS, {"stale_trial": SlowRecordCheck}):
                result = auditor.run_check("stale_trial", dry_run=False)
        finally:
            release.set()

        assert len(result.errors) == 1
        assert result.errors[0]["tenant_id"] == slow.tenant_id
        assert result.errors[0]["error"].startswith("Timed out")
        fast.refresh_from_db()
        assert fast.status == SubscriptionStatus.EXPIRED
        slow.refresh_from_db()
        assert slow.status == SubscriptionStatus.TRIAL

    def test_failed_fix_is_reported(self, auditor, plans, now):
        sub = _stale_active(plans, now, ended_ago=timedelta(days=2))

        with patch.object(
            auditor.engine,
            "reconcile_clock",
            side_effect=RuntimeError("lock wait timeout"),
        ):
            result = auditor.run_check("stale_active", dry_run=False)

        assert len(result.issues) == 1
        assert result.fixed == 0
        assert result.errors[0]["error"] == "lock wait timeout"
        sub.refresh_from_db()
        assert sub.status == SubscriptionStatus.ACTIVE

    def test_locked_record_is_skipped_without_waiting(self, auditor, plans, now):
        locked = _stale_active(plans, now, ended_ago=timedelta(days=2))
        free = _stale_active(plans, now, ended_ago=timedelta(days=2))
        original_lock = auditor.engine.store.lock
        lock_calls = []

        def lock(tenant_id, *, nowait=False):
            lock_calls.append(nowait)
            if tenant_id == locked.tenant_id:
                raise RecordLockedError(tenant_id)
            return original_lock(tenant_id, nowait=nowait)

        with patch.object(auditor.engine.store, "lock", side_effect=lock):
            result = auditor.run_check("stale_active", dry_run=False)

        assert lock_calls == [True, True]
        assert result.fixed == 1
        assert result.errors == [
            {
                "check": "stale_active",
                "tenant_id": locked.tenant_id,
                "error": (
                    f"Subscription for tenant {locked.tenant_id} is locked by "
                    "another transaction."
                ),
            },
        ]
        locked.refresh_from_db()
        free.refresh_from_db()
        assert locked.status == SubscriptionStatus.ACTIVE
        assert free.status == SubscriptionStatus.PAST_DUE

    def test_worker_closes_its_connection(self, auditor, plans, now):
        _stale_trial(plans, now)

        with patch("smartduka.subscriptions.audit.connection") as worker_connection:
            auditor.run_check("stale_trial")

        worker_connection.close.assert_called_once_with()
