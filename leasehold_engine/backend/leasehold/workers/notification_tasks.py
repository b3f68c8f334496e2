# backend/leasehold/workers/notification_tasks.py
from __future__ import annotations

import logging

from ..config import settings
from ..db import SessionLocal
from ..middleware.request_id import correlation_scope
from ..services.notifications import (
    dispatch_jobs,
    due_job_ids,
    prune_finished_jobs,
    requeue_stuck_jobs,
    run_job,
)
from .celery_app import celery_app

log = logging.getLogger("leasehold.notifications")


@celery_app.task(
    bind=True,
    max_retries=None,  # attempts are counted on the job row, not by celery
    name="leasehold.workers.notification_tasks.deliver_notification",
)
def deliver_notification(self, job_id: int) -> dict:
    """
    Runs one notification job.

    run_job owns the lifecycle (claim, attempts, backoff, failed set); this
    task only maps a "retry" outcome onto a delayed redelivery. acks_late
    means a worker that dies mid-send leaves the message unacked; the row is
    then picked up again by the recovery sweep.
    """
    with correlation_scope(f"job-{int(job_id)}"):
        db = SessionLocal()
        try:
            outcome = run_job(db, job_id=int(job_id))
        finally:
            db.close()

    if outcome.status == "retry":
        raise self.retry(countdown=int(outcome.retry_in_seconds or 0))
    return outcome.as_dict()


@celery_app.task(name="leasehold.workers.notification_tasks.sweep_notifications")
def sweep_notifications() -> dict:
    """
    Periodic self-healing sweep (celery beat, every minute).

    - jobs stuck in running past the timeout go back to queued
    - due queued jobs are handed to workers again (covers broker outages at enqueue time)
    - done jobs past the retention window are deleted
    """
    db = SessionLocal()
    try:
        requeued = requeue_stuck_jobs(db)
        ids = due_job_ids(db, limit=int(settings.notification_drain_batch_size))
        pruned = prune_finished_jobs(db)
    finally:
        db.close()

    dispatched = dispatch_jobs(ids)
    if requeued or pruned:
        log.info("notification sweep: requeued=%s dispatched=%s pruned=%s", requeued, dispatched, pruned)
    return {"ok": True, "requeued": requeued, "dispatched": dispatched, "pruned": pruned}
