"""
Celery application for settlement background work.

Workers run the escrow release, transfer retry, webhook processing and
reconciliation tasks. Beat reads its schedule from django-celery-beat
(see settlement/migrations/0002_add_periodic_schedules.py).

Usage:
    celery -A config worker -l info
    celery -A config beat -l info
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Finds settlement/tasks.py, which re-exports the worker tasks
app.autodiscover_tasks()
