"""
Pause and resume for delegated subscriptions.

- Subscription.pause_ends_at: automatic resumption time of a paused subscription
- SubscriptionEvent "resumed" event type
- Celery Beat schedule for scheduled resumptions
"""

from django.db import migrations, models

TASK = {
    "name": "Billing: Process Scheduled Resumptions",
    "task": "billing.workers.dunning_worker.process_scheduled_resumptions",
    "every": 15,
    "period": "minutes",
    "description": "Resumes paused subscriptions whose pause_ends_at has passed.",
}


def create_periodic_task(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    schedule, _ = IntervalSchedule.objects.get_or_create(every=TASK["every"], period=TASK["period"])
    PeriodicTask.objects.get_or_create(
        name=TASK["name"],
        defaults={
            "task": TASK["task"],
            "interval": schedule,
            "enabled": True,
            "description": TASK["description"],
        },
    )


def remove_periodic_task(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(name=TASK["name"]).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0002_add_billing_schedules"),
    ]

    operations = [
        migrations.AddField(
            model_name="subscription",
            name="pause_ends_at",
            field=models.DateTimeField(
                blank=True,
                help_text="When a paused (suspended) subscription resumes on its own",
                null=True,
            ),
        ),
        migrations.AlterField(
            model_name="subscriptionevent",
            name="event_type",
            field=models.CharField(
                choices=[
                    ("created", "Created"),
                    ("redeemed", "Redeemed"),
                    ("renewed", "Renewed"),
                    ("canceled", "Canceled"),
                    ("expired", "Expired"),
                    ("completed", "Completed"),
                    ("suspended", "Suspended"),
                    ("resumed", "Resumed"),
                    ("failed_validation", "Failed Validation"),
                    ("failed_customer_creation", "Failed Customer Creation"),
                    ("failed_wallet_creation", "Failed Wallet Creation"),
                    ("failed_delegation_storage", "Failed Delegation Storage"),
                    ("failed_subscription_db", "Failed Subscription DB"),
                    ("failed_redemption", "Failed Redemption"),
                    ("failed_transaction", "Failed Transaction"),
                    ("failed_duplicate", "Failed Duplicate"),
                    ("failed", "Failed"),
                ],
                db_index=True,
                help_text="Event type",
                max_length=40,
            ),
        ),
        migrations.RunPython(create_periodic_task, remove_periodic_task),
    ]
