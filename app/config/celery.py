"""
Celery configuration for the escrow service.

Workers run the escrow background jobs:
- Payment verification queued by the Stripe webhook
- Dispute refund execution
- Automatic payout transfers
- The periodic auto-confirm sweep (scheduled by django-celery-beat)

Redis is both the message broker and result backend. Tasks are
auto-discovered from each installed app's tasks.py.

Usage:
    celery -A config worker -l info
    celery -A config beat -l info

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("escrow_service")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
