# backend/leasehold/workers/celery_app.py
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from ..config import settings

celery_app = Celery(
    "leasehold",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "leasehold.workers.notification_tasks",
        "leasehold.workers.batch_tasks",
    ],
)

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    worker_concurrency=int(settings.notification_concurrency),
    timezone="UTC",
)

celery_app.conf.task_routes = {
    "leasehold.workers.notification_tasks.*": {"queue": "notifications"},
    "leasehold.workers.batch_tasks.*": {"queue": "batches"},
}

# Clock times are deployment parameters. Each sweep takes its own batch lock.
celery_app.conf.beat_schedule = {
    "rent-reminders-daily": {
        "task": "leasehold.workers.batch_tasks.run_reminders",
        "schedule": crontab(minute=0, hour=int(settings.reminder_hour)),
    },
    "late-fees-daily": {
        "task": "leasehold.workers.batch_tasks.run_late_fees",
        "schedule": crontab(minute=0, hour=int(settings.late_fee_hour)),
    },
    "lease-expiry-daily": {
        "task": "leasehold.workers.batch_tasks.run_expiry",
        "schedule": crontab(minute=0, hour=int(settings.expiry_hour)),
    },
    "notification-recovery": {
        "task": "leasehold.workers.notification_tasks.sweep_notifications",
        "schedule": crontab(),
    },
}
