"""
Add celery-beat schedules for the settlement background jobs.

- Reconciliation sweep every 15 minutes (stale product locks, stuck releases)
- Escrow release scan every hour
- Failed transfer retry every 30 minutes
- Failed webhook retry every 5 minutes
- Stuck webhook reset every 30 minutes
"""

from django.db import migrations

PERIODIC_TASKS = [
    {
        "name": "Settlement Reconciliation Sweep",
        "task": "settlement.run_reconciliation_sweep",
        "every": 15,
        "description": (
            "Finalizes, releases or abandons checkouts whose products have been "
            "PENDING_PAYMENT past the timeout, and re-queues stuck escrow transfers."
        ),
    },
    {
        "name": "Process Escrow Releases",
        "task": "settlement.process_escrow_releases",
        "every": 60,
        "description": "Queues seller transfers for items past the buyer-protection window.",
    },
    {
        "name": "Retry Failed Transfers",
        "task": "settlement.retry_failed_transfers",
        "every": 30,
        "description": "Re-queues TRANSFER_FAILED items that are not escalated.",
    },
    {
        "name": "Retry Failed Webhooks",
        "task": "settlement.retry_failed_webhooks",
        "every": 5,
        "description": "Re-queues FAILED webhook events below the retry cap.",
    },
    {
        "name": "Cleanup Stuck Webhooks",
        "task": "settlement.cleanup_stuck_webhooks",
        "every": 30,
        "description": "Resets webhook events stuck in PROCESSING so they are retried.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create interval schedules and periodic tasks."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for spec in PERIODIC_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=spec["every"],
            period="minutes",
        )
        PeriodicTask.objects.get_or_create(
            name=spec["name"],
            defaults={
                "task": spec["task"],
                "interval": schedule,
                "enabled": True,
                "description": spec["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[spec["name"] for spec in PERIODIC_TASKS],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("settlement", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
