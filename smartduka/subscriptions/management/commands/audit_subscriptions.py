"""
Management command to run the subscription reconciliation audit.

Reports records whose stored state disagrees with the clock or the plan
catalog. Runs as a dry run unless ``--fix`` is given.

Usage:
    python manage.py audit_subscriptions
    python manage.py audit_subscriptions --fix
    python manage.py audit_subscriptions --check stale_trial --check stale_active
    python manage.py audit_subscriptions --stats

Environment:
    Scheduled daily by Celery beat (``smartduka.audit_subscriptions``) with --fix.
"""

from django.core.management.base import BaseCommand

from smartduka.subscriptions.audit import CHECKS
from smartduka.subscriptions.audit import ReconciliationAuditor

MAX_DISPLAY_ISSUES = 20


class Command(BaseCommand):
    help = "Find and optionally repair drifted subscription records."

    def add_arguments(self, parser):
        parser.add_argument(
            "--fix",
            action="store_true",
            help="Repair the issues found (default is a dry run)",
        )
        parser.add_argument(
            "--check",
            action="append",
            choices=list(CHECKS),
            dest="checks",
            help="Run only this check. May be repeated.",
        )
        parser.add_argument(
            "--record-timeout",
            type=float,
            default=None,
            help="Seconds allowed for inspecting one record (0 disables)",
        )
        parser.add_argument(
            "--stats",
            action="store_true",
            help="Print subscription statistics and exit",
        )

    def handle(self, *args, **options):
        if options["record_timeout"] is None:
            auditor = ReconciliationAuditor()
        else:
            auditor = ReconciliationAuditor(record_timeout=options["record_timeout"])

        if options["stats"]:
            self._show_stats(auditor.subscription_stats())
            return

        dry_run = not options["fix"]
        report = auditor.run_audit(dry_run=dry_run, checks=options["checks"])

        prefix = "[DRY RUN] " if dry_run else ""
        self.stdout.write(
            f"{prefix}Audited {report.total_subscriptions} subscription(s)",
        )
        for result in report.checks.values():
            style = self.style.WARNING if result.issues else self.style.SUCCESS
            self.stdout.write(
                style(
                    f"  {result.name}: {len(result.issues)} issue(s), "
                    f"{result.fixed} fixed",
                ),
            )
            for issue in result.issues[:MAX_DISPLAY_ISSUES]:
                mark = " (fixed)" if issue.fixed else ""
                self.stdout.write(
                    f"    - tenant {issue.tenant_id}: {issue.issue_type}: "
                    f"{issue.detail}{mark}",
                )
            if len(result.issues) > MAX_DISPLAY_ISSUES:
                extra = len(result.issues) - MAX_DISPLAY_ISSUES
                self.stdout.write(f"    ... and {extra} more")

        for error in report.errors:
            self.stdout.write(
                self.style.ERROR(
                    f"  {error['check']} failed on tenant {error['tenant_id']}: "
                    f"{error['error']}",
                ),
            )

        summary = (
            f"{prefix}{report.issues_found} issue(s) found, "
            f"{report.issues_fixed} fixed, {len(report.errors)} error(s)."
        )
        if report.errors:
            self.stdout.write(self.style.ERROR(summary))
        else:
            self.stdout.write(self.style.SUCCESS(summary))

    def _show_stats(self, stats: dict):
        self.stdout.write(f"Total subscriptions: {stats['total']}")
        for key in ("by_status", "by_plan", "by_billing_cycle"):
            self.stdout.write(f"{key.replace('_', ' ').capitalize()}:")
            for name, count in sorted(stats[key].items()):
                self.stdout.write(f"  {name}: {count}")
        self.stdout.write(f"Expiring in 7 days: {stats['expiring_in_7_days']}")
        self.stdout.write(f"Expired but active: {stats['expired_but_active']}")
