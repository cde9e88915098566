"""
Add celery-beat schedules for the escrow sweeps.

- Auto-confirm sweep: every ESCROW_AUTO_CONFIRM_SWEEP_MINUTES (15 by
  default), advances shipped and delivered transactions whose windows
  have passed
- Payout executor: every 10 minutes, queues pending payouts for sellers
  with an enabled payout account (no-op unless ESCROW_AUTO_EXECUTE_PAYOUTS)
"""

from django.conf import settings
from django.db import migrations

PERIODIC_TASKS = [
    {
        "name": "Escrow Auto-Confirm Sweep",
        "task": "escrow.workers.auto_confirm.process_auto_confirmations",
        "every": getattr(settings, "ESCROW_AUTO_CONFIRM_SWEEP_MINUTES", 15),
        "description": (
            "Confirms delivery for shipped transactions and releases funds for "
            "delivered transactions once their auto-confirm windows expire."
        ),
    },
    {
        "name": "Escrow Payout Executor",
        "task": "escrow.workers.payout_executor.process_pending_payouts",
        "every": 10,
        "description": "Queues pending seller payouts for automatic transfer.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in PERIODIC_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=entry["every"],
            period="minutes",
        )
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "interval": schedule,
                "enabled": True,
                "description": entry["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[entry["name"] for entry in PERIODIC_TASKS],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
