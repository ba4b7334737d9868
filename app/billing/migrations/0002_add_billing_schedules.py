"""
Add Celery Beat schedules for billing tasks.

This migration creates periodic task schedules for:
- Redemption sweep (due subscriptions)
- Dunning (retries, reminders, missing campaigns)
- Scheduled cancellations
- Retrying failed processor events
"""

from django.db import migrations

TASKS = [
    {
        "name": "Billing: Redemption Sweep",
        "task": "billing.workers.redemption_sweeper.run_redemption_sweep",
        "every": 1,
        "period": "minutes",
        "description": (
            "Claims subscriptions whose next redemption is due and queues one "
            "redemption task per claimed subscription."
        ),
    },
    {
        "name": "Billing: Process Dunning Campaigns",
        "task": "billing.workers.dunning_worker.process_dunning_campaigns",
        "every": 15,
        "period": "minutes",
        "description": (
            "Runs due dunning retries and applies final actions once attempts "
            "and the grace period are exhausted."
        ),
    },
    {
        "name": "Billing: Send Pre-Dunning Reminders",
        "task": "billing.workers.dunning_worker.send_pre_dunning_reminders",
        "every": 1,
        "period": "hours",
        "description": "Emails customers ahead of the first dunning retry.",
    },
    {
        "name": "Billing: Open Missing Dunning Campaigns",
        "task": "billing.workers.dunning_worker.open_missing_dunning_campaigns",
        "every": 1,
        "period": "hours",
        "description": "Opens campaigns for overdue subscriptions left without one.",
    },
    {
        "name": "Billing: Process Scheduled Cancellations",
        "task": "billing.workers.dunning_worker.process_scheduled_cancellations",
        "every": 15,
        "period": "minutes",
        "description": "Cancels subscriptions whose cancel_at has passed.",
    },
    {
        "name": "Billing: Retry Failed Sync Events",
        "task": "billing.tasks.retry_failed_sync_events",
        "every": 5,
        "period": "minutes",
        "description": (
            "Re-queues failed processor events with attempts left, including "
            "deliveries that could not be routed on arrival."
        ),
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create periodic tasks for billing."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for task in TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=task["every"],
            period=task["period"],
        )
        PeriodicTask.objects.get_or_create(
            name=task["name"],
            defaults={
                "task": task["task"],
                "interval": schedule,
                "enabled": True,
                "description": task["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove all billing periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(name__in=[task["name"] for task in TASKS]).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
