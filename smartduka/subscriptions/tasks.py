"""
Celery tasks for scheduled subscription maintenance.

Each task wraps a management command so the same work can be run by hand
or by Celery beat. Schedules are configured in ``CELERY_BEAT_SCHEDULE``:

    process_subscriptions  every 15 minutes
    audit_subscriptions    daily at 02:30, with --fix

To run the worker and scheduler:
    celery -A config worker --loglevel=info
    celery -A config beat --loglevel=info
"""

import logging
from datetime import UTC
from datetime import datetime
from io import StringIO

from celery import shared_task
from django.core.management import call_command
from django.db import OperationalError

logger = logging.getLogger(__name__)

# Transient failures worth retrying.
RETRYABLE_EXCEPTIONS = (
    OperationalError,
    ConnectionError,
    TimeoutError,
)


def _run_management_command(command_name: str, *args: str) -> dict:
    """
    Run a management command and return its captured output.

    Exceptions propagate so ``autoretry_for`` can handle them.
    """
    out = StringIO()
    call_command(command_name, *args, stdout=out)
    return {
        "status": "completed",
        "command": command_name,
        "output": out.getvalue().strip(),
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }


@shared_task(
    bind=True,
    name="smartduka.process_subscriptions",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,
    retry_backoff_max=600,
    acks_late=True,
)
def process_subscriptions(self, tenant_id: int | None = None) -> dict:
    """Drain the billing-event inbox, then run the clock sweep."""
    logger.info("Starting subscription processing (task_id=%s)", self.request.id)
    args = [] if tenant_id is None else ["--tenant", str(tenant_id)]
    result = _run_management_command("process_subscriptions", *args)
    logger.info("Subscription processing completed: %s", result["output"])
    return result


@shared_task(
    bind=True,
    name="smartduka.audit_subscriptions",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=300,
    retry_backoff_max=1800,
    acks_late=True,
)
def audit_subscriptions(self, fix: bool = True) -> dict:
    """Run the reconciliation audit, repairing what it finds by default."""
    logger.info("Starting subscription audit (task_id=%s)", self.request.id)
    args = ["--fix"] if fix else []
    result = _run_management_command("audit_subscriptions", *args)
    logger.info("Subscription audit completed: %s", result["output"])
    return result
