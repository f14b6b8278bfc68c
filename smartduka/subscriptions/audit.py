"""
Reconciliation audit for subscription records.

Finds records whose stored state has drifted from what the clock or the plan
catalog says it should be, and optionally repairs them. Each check can run on
its own or as part of a full audit, and every check supports a dry run that
reports without writing.

Checks:
    daily_period_mismatch  daily period longer than number_of_days + 1 day
    stale_trial            trial whose end date has passed
    stale_active           active subscription whose period has ended
    orphaned_tenant        tenant with no subscription record
    plan_code_drift        plan_code differs from the referenced plan

Repairs go through the lifecycle engine, so the audit never writes status
itself and uses the same grace arithmetic as the clock sweep. A live run
leaves nothing for a second live run to fix.

Each record is inspected separately. A record that raises, or whose
inspection takes longer than ``record_timeout`` seconds, is reported as an
error and the sweep moves on. Inspection runs on a worker thread that closes
its own database connection. A timed-out worker is abandoned, not killed.

Repairs never wait on a row lock held by another transaction. A locked
record is reported as an error and left for the next run.

Usage:
    report = ReconciliationAuditor().run_audit(dry_run=True)
    result = ReconciliationAuditor().run_check("stale_trial", dry_run=False)
"""

from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import connection

from smartduka.subscriptions.constants import BillingCycle
from smartduka.subscriptions.constants import SubscriptionStatus
from smartduka.subscriptions.constants import TransitionTrigger
from smartduka.subscriptions.constants import get_setting
from smartduka.subscriptions.exceptions import RecordLockedError
from smartduka.subscriptions.lifecycle import LifecycleEngine
from smartduka.subscriptions.lifecycle import LifecycleState
from smartduka.subscriptions.lifecycle import grace_outcome
from smartduka.subscriptions.lifecycle import next_clock_step

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


@dataclass
class AuditIssue:
    check: str
    tenant_id: int
    issue_type: str
    detail: str
    fixed: bool = False


@dataclass
class CheckResult:
    name: str
    issues: list[AuditIssue] = field(default_factory=list)
    fixed: int = 0
    errors: list[dict] = field(default_factory=list)

    def add_error(self, tenant_id, error: str) -> None:
        self.errors.append(
            {"check": self.name, "tenant_id": tenant_id, "error": error},
        )


@dataclass
class AuditReport:
    dry_run: bool
    total_subscriptions: int = 0
    issues_found: int = 0
    issues_fixed: int = 0
    checks: dict[str, CheckResult] = field(default_factory=dict)

    @property
    def errors(self) -> list[dict]:
        return [error for check in self.checks.values() for error in check.errors]

    def add(self, result: CheckResult) -> None:
        self.checks[result.name] = result
        self.issues_found += len(result.issues)
        self.issues_fixed += result.fixed

    def to_dict(self) -> dict:
        data = asdict(self)
        data["errors"] = self.errors
        return data


# =============================================================================
# Checks
# =============================================================================


class AuditCheck:
    """
    One reconciliation rule.

    ``inspect`` only looks at the already-loaded subject and must not touch
    the database, so it can run on a worker thread under a timeout.
    ``fix`` runs on the calling thread.
    """

    name = ""
    description = ""

    def candidates(self, engine: LifecycleEngine) -> Iterable:
        raise NotImplementedError

    def subject_id(self, subject) -> int:
        return subject.tenant_id

    def inspect(self, subject, now: datetime) -> AuditIssue | None:
        raise NotImplementedError

    def fix(self, engine: LifecycleEngine, subject) -> bool:
        raise NotImplementedError


class DailyPeriodMismatchCheck(AuditCheck):
    name = "daily_period_mismatch"
    description = "Daily subscriptions whose period is longer than paid for"

    def candidates(self, engine):
        return engine.store.all_records().filter(
            billing_cycle=BillingCycle.DAILY,
            current_period_start__isnull=False,
            current_period_end__isnull=False,
        ).exclude(
            # The trial end governs a trial period, not the billing cycle.
            status=SubscriptionStatus.TRIAL,
            trial_end_date__isnull=False,
        )

    def inspect(self, subject, now):
        actual = subject.current_period_end - subject.current_period_start
        allowed = timedelta(days=subject.number_of_days + 1)
        if actual <= allowed:
            return None
        return AuditIssue(
            check=self.name,
            tenant_id=subject.tenant_id,
            issue_type="PERIOD_END_MISMATCH",
            detail=(
                f"Period is {actual.days} day(s), expected "
                f"{subject.number_of_days}"
            ),
        )

    def fix(self, engine, subject):
        return engine.repair_daily_period(subject.tenant_id) is not None


class StaleTrialCheck(AuditCheck):
    name = "stale_trial"
    description = "Trials whose end date has passed"

    def candidates(self, engine):
        return engine.store.all_records().filter(status=SubscriptionStatus.TRIAL)

    def inspect(self, subject, now):
        step = next_clock_step(LifecycleState.from_record(subject), now)
        if step is None:
            return None
        ended = min(
            d for d in (subject.trial_end_date, subject.current_period_end) if d
        )
        return AuditIssue(
            check=self.name,
            tenant_id=subject.tenant_id,
            issue_type="TRIAL_EXPIRED",
            detail=f"Trial ended {ended.isoformat()}",
        )

    def fix(self, engine, subject):
        change = engine.reconcile_clock(subject.tenant_id, SubscriptionStatus.TRIAL)
        return change is not None


class StaleActiveCheck(AuditCheck):
    name = "stale_active"
    description = "Active subscriptions whose billing period has ended"

    def candidates(self, engine):
        return engine.store.all_records().filter(
            status=SubscriptionStatus.ACTIVE,
            current_period_end__isnull=False,
        )

    def inspect(self, subject, now):
        if now < subject.current_period_end:
            return None
        status, _grace_end = grace_outcome(
            subject.current_period_end,
            now,
            auto_renew=subject.auto_renew,
        )
        overdue = now - subject.current_period_end
        return AuditIssue(
            check=self.name,
            tenant_id=subject.tenant_id,
            issue_type=f"SHOULD_BE_{status.upper()}",
            detail=f"Period ended {overdue.days} day(s) ago",
        )

    def fix(self, engine, subject):
        change = engine.reconcile_clock(subject.tenant_id, SubscriptionStatus.ACTIVE)
        return change is not None


class OrphanedTenantCheck(AuditCheck):
    name = "orphaned_tenant"
    description = "Tenants without a subscription record"

    def candidates(self, engine):
        return engine.store.tenants_without_subscription()

    def subject_id(self, subject):
        return subject.pk

    def inspect(self, subject, now):
        return AuditIssue(
            check=self.name,
            tenant_id=subject.pk,
            issue_type="NO_SUBSCRIPTION",
            detail=f"Tenant '{subject.name}' has no subscription",
        )

    def fix(self, engine, subject):
        engine.start_subscription(
            subject,
            trigger=TransitionTrigger.AUDIT,
            reason="Trial created by reconciliation audit",
        )
        return True


class PlanCodeDriftCheck(AuditCheck):
    name = "plan_code_drift"
    description = "Stored plan code differs from the referenced plan"

    def candidates(self, engine):
        return engine.store.all_records()

    def inspect(self, subject, now):
        if subject.plan_code == subject.plan.code:
            return None
        return AuditIssue(
            check=self.name,
            tenant_id=subject.tenant_id,
            issue_type="PLAN_CODE_MISMATCH",
            detail=f"plan_code is {subject.plan_code}, plan is {subject.plan.code}",
        )

    def fix(self, engine, subject):
        return engine.sync_plan_code(subject.tenant_id) is not None


CHECKS = {
    check.name: check
    for check in (
        DailyPeriodMismatchCheck,
        StaleTrialCheck,
        StaleActiveCheck,
        OrphanedTenantCheck,
        PlanCodeDriftCheck,
    )
}


# =============================================================================
# Auditor
# =============================================================================


def _inspect_in_worker(check, subject, now):
    """Run ``check.inspect`` and drop any connection this thread opened."""
    try:
        return check.inspect(subject, now)
    finally:
        connection.close()


class ReconciliationAuditor:
    def __init__(
        self,
        engine: LifecycleEngine | None = None,
        record_timeout: float | None = -1,
    ):
        self.engine = engine or LifecycleEngine()
        if record_timeout == -1:
            record_timeout = get_setting("SUBSCRIPTION_AUDIT_RECORD_TIMEOUT_SECONDS")
        self.record_timeout = record_timeout
        self._executor = None

    def run_audit(
        self,
        *,
        dry_run: bool = True,
        checks: Iterable[str] | None = None,
    ) -> AuditReport:
        names = list(checks) if checks else list(CHECKS)
        report = AuditReport(
            dry_run=dry_run,
            total_subscriptions=self.engine.store.count(),
        )
        for name in names:
            report.add(self.run_check(name, dry_run=dry_run))
        logger.info(
            "Subscription audit finished: %d issue(s), %d fixed, %d error(s)%s",
            report.issues_found,
            report.issues_fixed,
            len(report.errors),
            " (dry run)" if dry_run else "",
        )
        return report

    def run_check(self, name: str, *, dry_run: bool = True) -> CheckResult:
        try:
            check = CHECKS[name]()
        except KeyError:
            msg = f"Unknown audit check '{name}'. Choose from: {', '.join(CHECKS)}"
            raise ValueError(msg) from None

        result = CheckResult(name=name)
        now = self.engine.now()
        try:
            for subject in check.candidates(self.engine):
                self._audit_one(check, subject, now, result, dry_run=dry_run)
        finally:
            self._close_executor()
        if result.issues:
            logger.warning(
                "Audit check %s found %d issue(s), fixed %d",
                name,
                len(result.issues),
                result.fixed,
            )
        return result

    def _audit_one(self, check, subject, now, result, *, dry_run) -> None:
        subject_id = check.subject_id(subject)
        try:
            issue = self._inspect(check, subject, now)
        except FutureTimeoutError:
            logger.error(
                "Audit check %s timed out on tenant=%s after %ss",
                check.name,
                subject_id,
                self.record_timeout,
            )
            result.add_error(
                subject_id,
                f"Timed out after {self.record_timeout}s",
            )
            return
        except Exception as exc:
            logger.exception(
                "Audit check %s failed on tenant=%s",
                check.name,
                subject_id,
            )
            result.add_error(subject_id, str(exc))
            return

        if issue is None:
            return
        result.issues.append(issue)
        if dry_run:
            return

        try:
            issue.fixed = check.fix(self.engine, subject)
        except RecordLockedError as exc:
            logger.warning(
                "Audit fix %s skipped tenant=%s: record locked",
                check.name,
                subject_id,
            )
            result.add_error(subject_id, exc.detail)
            return
        except Exception as exc:
            logger.exception(
                "Audit fix %s failed on tenant=%s",
                check.name,
                subject_id,
            )
            result.add_error(subject_id, str(exc))
            return
        if issue.fixed:
            result.fixed += 1
            logger.info(
                "Audit fixed %s on tenant=%s: %s",
                issue.issue_type,
                subject_id,
                issue.detail,
            )

    def _inspect(self, check, subject, now):
        if not self.record_timeout:
            return check.inspect(subject, now)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="subscription-audit",
            )
        future = self._executor.submit(_inspect_in_worker, check, subject, now)
        try:
            return future.result(timeout=self.record_timeout)
        except FutureTimeoutError:
            # The stuck worker cannot be interrupted; abandon it.
            self._close_executor()
            raise

    def _close_executor(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def subscription_stats(self) -> dict:
        """Counts by status, plan and billing cycle, plus what needs attention."""
        now = self.engine.now()
        records = list(self.engine.store.all_records())
        expiring_cutoff = now + timedelta(days=7)
        return {
            "total": len(records),
            "by_status": dict(Counter(r.status for r in records)),
            "by_plan": dict(Counter(r.plan_code for r in records)),
            "by_billing_cycle": dict(Counter(r.billing_cycle for r in records)),
            "expiring_in_7_days": sum(
                1
                for r in records
                if r.status == SubscriptionStatus.ACTIVE
                and r.current_period_end
                and now < r.current_period_end <= expiring_cutoff
            ),
            "expired_but_active": sum(
                1
                for r in records
                if r.status == SubscriptionStatus.ACTIVE
                and r.current_period_end
                and r.current_period_end <= now
            ),
        }
