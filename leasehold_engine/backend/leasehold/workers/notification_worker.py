# backend/leasehold/workers/notification_worker.py
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional

from ..clients.notify_gateway import NotifyGatewayClient
from ..config import settings
from ..db import SessionLocal
from ..middleware.request_id import correlation_scope
from ..services.notifications import JobOutcome, due_job_ids, requeue_stuck_jobs, run_job


def _run_one(job_id: int, now: Optional[datetime], gateway: Optional[NotifyGatewayClient]) -> JobOutcome:
    # one session per job; sessions are not shared across threads, and pool
    # threads do not inherit the caller's context
    with correlation_scope(f"job-{job_id}"):
        db = SessionLocal()
        try:
            return run_job(db, job_id=job_id, now=now, gateway=gateway)
        finally:
            db.close()


def drain(
    *,
    limit: Optional[int] = None,
    concurrency: Optional[int] = None,
    now: Optional[datetime] = None,
    gateway: Optional[NotifyGatewayClient] = None,
) -> list[JobOutcome]:
    """
    Manual worker:
    - useful in dev and in deferred dispatch mode when celery is not running
    - same claim/retry/backoff semantics as the celery task, via run_job
    Runs each due job once; retried jobs wait for their next_attempt_at.
    """
    db = SessionLocal()
    try:
        requeue_stuck_jobs(db, now=now)
        ids = due_job_ids(db, now=now, limit=int(limit or settings.notification_drain_batch_size))
    finally:
        db.close()

    if not ids:
        return []

    workers = max(1, int(concurrency or settings.notification_concurrency))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(lambda i: _run_one(i, now, gateway), ids))


def main(limit: int = 100) -> None:
    for out in drain(limit=limit):
        print(f"[notification_worker] job_id={out.job_id} status={out.status} attempts={out.attempts}")


if __name__ == "__main__":
    main()
