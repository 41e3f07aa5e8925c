"""
Add Celery Beat schedules for escrow background work.

This migration creates periodic task schedules for:
- Auto-release of HELD entries whose window has elapsed
- Execution of due payouts and refunds
- Recovery of settlements interrupted mid-execution
- Webhook retry and stuck-webhook cleanup
"""

from django.db import migrations

PERIODIC_TASKS = [
    (
        "Escrow: Sweep Auto Releases",
        "escrow.workers.auto_release.sweep_auto_releases",
        15,
        "Queues release of HELD entries past their auto-release time "
        "with no active dispute.",
    ),
    (
        "Escrow: Process Pending Settlements",
        "escrow.workers.payout_executor.process_pending_payouts",
        5,
        "Queues execution of PENDING payouts and refunds whose next "
        "attempt time has come.",
    ),
    (
        "Escrow: Recover Stuck Settlements",
        "escrow.workers.payout_executor.recover_stuck_payouts",
        30,
        "Returns legs stuck in PROCESSING without a gateway reference "
        "to PENDING.",
    ),
    (
        "Escrow: Retry Failed Webhooks",
        "escrow.tasks.retry_failed_webhooks",
        5,
        "Re-queues FAILED gateway webhook events with retries left.",
    ),
    (
        "Escrow: Cleanup Stuck Webhooks",
        "escrow.tasks.cleanup_stuck_webhooks",
        30,
        "Marks webhook events stuck in PROCESSING as FAILED so they are retried.",
    ),
]


def create_periodic_tasks(apps, schema_editor):
    """Create the escrow periodic tasks."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for name, task, minutes, description in PERIODIC_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=minutes,
            period="minutes",
        )
        PeriodicTask.objects.get_or_create(
            name=name,
            defaults={
                "task": task,
                "interval": schedule,
                "enabled": True,
                "description": description,
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[name for name, *_ in PERIODIC_TASKS],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
