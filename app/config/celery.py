"""
Celery configuration for the billing service.

Celery runs every background loop of the lifecycle engine:
- Redemption sweeps that claim due subscriptions and redeem them on-chain
- Dunning campaigns that retry failed redemptions on a schedule
- Application and retry of payment-processor sync events

Redis is both the message broker and the result backend. Periodic schedules
are stored in the database by django-celery-beat and installed by the
billing migrations.

Usage:
    # Trigger a sweep by hand:
    from billing.workers.redemption_sweeper import run_redemption_sweep

    run_redemption_sweep.delay()

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("billing")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# billing.tasks re-exports the worker modules, so autodiscovery finds them
app.autodiscover_tasks()
