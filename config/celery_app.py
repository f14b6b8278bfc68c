"""
Celery application configuration for SmartDuka.

The beat schedule in ``config.settings.base.CELERY_BEAT_SCHEDULE`` drives the
subscription lifecycle sweep and the nightly reconciliation audit. Tasks are
declared with ``@shared_task`` so they also run under
``CELERY_TASK_ALWAYS_EAGER`` in tests.

Usage:
    celery -A config worker --loglevel=info
    celery -A config beat --loglevel=info
"""

import logging
import os

from celery import Celery

logger = logging.getLogger(__name__)

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.local")

app = Celery("smartduka")

# All celery-related configuration keys use a `CELERY_` prefix in settings.
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
