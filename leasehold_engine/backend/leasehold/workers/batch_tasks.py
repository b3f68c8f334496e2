# backend/leasehold/workers/batch_tasks.py
from __future__ import annotations

from datetime import date
from typing import Callable

from sqlalchemy.orm import Session

from ..db import SessionLocal
from ..middleware.request_id import correlation_scope
from ..services.rent_batches import SweepReport, run_expiry_sweep, run_late_fee_sweep, run_reminder_sweep
from .celery_app import celery_app


def _run(batch: str, sweep: Callable[[Session], SweepReport]) -> dict:
    with correlation_scope(f"batch-{batch}-{date.today().isoformat()}"):
        db = SessionLocal()
        try:
            return sweep(db).as_dict()
        finally:
            db.close()


@celery_app.task(name="leasehold.workers.batch_tasks.run_reminders")
def run_reminders() -> dict:
    return _run("reminders", run_reminder_sweep)


@celery_app.task(name="leasehold.workers.batch_tasks.run_late_fees")
def run_late_fees() -> dict:
    return _run("late_fees", run_late_fee_sweep)


@celery_app.task(name="leasehold.workers.batch_tasks.run_expiry")
def run_expiry() -> dict:
    return _run("expiry", run_expiry_sweep)
