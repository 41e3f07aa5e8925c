"""
Celery configuration for the escrow service.

Background work in this project:
- Sweeping HELD entries whose auto-release window has elapsed
- Executing payouts and refunds against the payment gateway
- Recovering settlement legs interrupted mid-execution
- Reprocessing failed gateway webhook events

Redis is used as both the message broker and result backend. Periodic
schedules live in the database (django-celery-beat) and are seeded by the
escrow migrations.

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Picks up escrow/tasks.py, which re-exports the worker tasks
app.autodiscover_tasks()
