# backend/leasehold/services/notifications.py
from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from fastapi import HTTPException
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..clients.notify_gateway import NotifyGatewayClient, get_gateway
from ..config import settings
from ..models import Agreement, AppUser, NotificationJob

log = logging.getLogger("leasehold.notifications")


class NotificationType(str, enum.Enum):
    RENT_DUE_REMINDER = "RENT_DUE_REMINDER"
    RENT_OVERDUE = "RENT_OVERDUE"
    LATE_FEE_APPLIED = "LATE_FEE_APPLIED"
    AGREEMENT_EXPIRY_WARNING = "AGREEMENT_EXPIRY_WARNING"
    AGREEMENT_CREATED = "AGREEMENT_CREATED"
    AGREEMENT_SIGNED = "AGREEMENT_SIGNED"
    AGREEMENT_TERMINATED = "AGREEMENT_TERMINATED"
    RENEWAL_PROPOSED = "RENEWAL_PROPOSED"
    RENEWAL_RESPONSE = "RENEWAL_RESPONSE"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    RENT_PAYMENT_RECEIVED = "RENT_PAYMENT_RECEIVED"
    APPLICATION_ACCEPTED = "APPLICATION_ACCEPTED"
    APPLICATION_REJECTED = "APPLICATION_REJECTED"
    MAINTENANCE_UPDATE = "MAINTENANCE_UPDATE"


TERMINAL = {"done", "failed"}


def _utcnow() -> datetime:
    return datetime.utcnow()


def _loads(s: Optional[str], default: Any) -> Any:
    if not s:
        return default
    try:
        return json.loads(s)
    except ValueError:
        return default


def backoff_seconds(attempt: int) -> int:
    """
    Exponential backoff after the given (1-based) failed attempt:
    base, 2*base, 4*base ... capped. With the default base of 5s: 5s, 10s, 20s.
    """
    base = int(settings.notification_backoff_base_seconds or 5)
    cap = int(settings.notification_backoff_max_seconds or 300)
    return min(cap, base * (2 ** max(0, int(attempt) - 1)))


def job_message(job: NotificationJob) -> dict[str, Any]:
    """The queue's wire shape: {type, data}."""
    return {"type": job.job_type, "data": _loads(job.payload_json, {})}


# -----------------------------------------------------------------------------
# Producers
# -----------------------------------------------------------------------------
def enqueue_notification(
    db: Session,
    *,
    job_type: NotificationType | str,
    data: dict[str, Any],
    idempotency_key: str,
    max_attempts: Optional[int] = None,
) -> tuple[NotificationJob, bool]:
    """
    Insert-if-absent keyed on idempotency_key. Returns (job, created).

    The key names the logical event ("overdue-12-2026-03"), never the attempt,
    so re-triggering the same event returns the existing job instead of a second send.

    Flush-only; the job commits with the caller's transaction. Call
    dispatch_jobs() after commit to hand new jobs to the workers.
    """
    jt = NotificationType(job_type).value
    key = str(idempotency_key).strip()
    if not key:
        raise ValueError("idempotency_key is required")

    existing = db.scalar(select(NotificationJob).where(NotificationJob.idempotency_key == key))
    if existing is not None:
        return existing, False

    job = NotificationJob(
        idempotency_key=key,
        job_type=jt,
        payload_json=json.dumps(data or {}, ensure_ascii=False, default=str),
        status="queued",
        attempts=0,
        max_attempts=int(max_attempts or settings.notification_max_attempts),
        next_attempt_at=None,
        delivered_json="[]",
        created_at=_utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(job)
    except IntegrityError:
        # lost an insert race for the same key
        existing = db.scalar(select(NotificationJob).where(NotificationJob.idempotency_key == key))
        if existing is None:
            raise
        return existing, False

    log.info("notification enqueued", extra={"job_id": job.id, "job_type": jt})
    return job, True


def dispatch_jobs(job_ids: Iterable[int]) -> int:
    """
    Hands committed jobs to the Celery workers. In "deferred" mode jobs wait for
    drain()/the recovery sweep instead. A broker outage is not an error: the
    row is durable and the recovery sweep will pick it up.
    """
    ids = [int(i) for i in job_ids if i is not None]
    if not ids:
        return 0
    if (settings.notification_dispatch_mode or "celery").strip().lower() != "celery":
        return 0

    from ..workers.notification_tasks import deliver_notification

    sent = 0
    for job_id in ids:
        try:
            deliver_notification.delay(job_id=job_id)
            sent += 1
        except Exception:
            log.warning("broker unavailable; job stays queued for recovery sweep", extra={"job_id": job_id}, exc_info=True)
    return sent


# -----------------------------------------------------------------------------
# Consumer
# -----------------------------------------------------------------------------
class Delivery:
    """
    Per-execution context handed to a handler.

    Every successful channel send is recorded on the job row and committed
    immediately, so when a job is retried (or redelivered after a crash) the
    sends that already went out are skipped.
    """

    def __init__(self, db: Session, job: NotificationJob, gateway: NotifyGatewayClient) -> None:
        self.db = db
        self.job = job
        self.gateway = gateway
        self.data: dict[str, Any] = _loads(job.payload_json, {})
        self.delivered: list[str] = list(_loads(job.delivered_json, []))
        self.sent: list[str] = []

    def agreement(self) -> Optional[Agreement]:
        agreement_id = self.data.get("agreement_id")
        if agreement_id is None:
            return None
        return self.db.scalar(select(Agreement).where(Agreement.id == int(agreement_id)))

    def user(self, user_id: Any) -> Optional[AppUser]:
        if user_id is None:
            return None
        return self.db.scalar(select(AppUser).where(AppUser.id == int(user_id)))

    def _mark(self, key: str) -> None:
        self.delivered.append(key)
        self.job.delivered_json = json.dumps(self.delivered)
        self.db.add(self.job)
        self.db.commit()

    def once(self, key: str) -> bool:
        """True the first time key is seen for this job (across retries)."""
        if key in self.delivered:
            return False
        self._mark(key)
        return True

    def send(self, *, channel: str, to: Optional[str], template: str, params: dict[str, Any], dedupe: str) -> bool:
        key = f"{channel}:{dedupe}:{template}"
        if not to or key in self.delivered:
            return False
        self.gateway.send(channel=channel, to=to, template=template, params=params)
        self._mark(key)
        self.sent.append(key)
        return True

    def notify_user(self, user: AppUser, *, template: str, params: dict[str, Any]) -> None:
        """Email always; SMS only with opt-in and a phone number; push only with a device token."""
        dedupe = f"user{user.id}"
        self.send(channel="email", to=user.email, template=template, params=params, dedupe=dedupe)
        if user.sms_opt_in and user.phone_number:
            self.send(channel="sms", to=user.phone_number, template=template, params=params, dedupe=dedupe)
        if user.push_token:
            self.send(channel="push", to=user.push_token, template=template, params=params, dedupe=dedupe)


Handler = Callable[[Delivery], None]


@dataclass(frozen=True)
class JobOutcome:
    job_id: int
    status: str  # done|retry|failed|skipped|not_found
    attempts: int = 0
    retry_in_seconds: Optional[int] = None
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "attempts": self.attempts,
            "retry_in_seconds": self.retry_in_seconds,
            "error": self.error,
        }


def _claim(db: Session, *, job_id: int, now: datetime) -> bool:
    res = db.execute(
        update(NotificationJob)
        .where(
            NotificationJob.id == int(job_id),
            NotificationJob.status == "queued",
            or_(NotificationJob.next_attempt_at.is_(None), NotificationJob.next_attempt_at <= now),
        )
        .values(status="running", started_at=now, attempts=NotificationJob.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(res.rowcount or 0) == 1


def run_job(
    db: Session,
    *,
    job_id: int,
    now: Optional[datetime] = None,
    gateway: Optional[NotifyGatewayClient] = None,
    handlers: Optional[dict[str, Handler]] = None,
) -> JobOutcome:
    """
    Executes one job with at-least-once semantics:
    - atomic claim (queued and due -> running), so two workers never run it concurrently
    - handler success -> done
    - handler exception -> re-queued with exponential backoff, or parked as
      failed once max_attempts is reached
    Terminal jobs are returned untouched.
    """
    now = now or _utcnow()

    job = db.scalar(select(NotificationJob).where(NotificationJob.id == int(job_id)))
    if job is None:
        return JobOutcome(job_id=int(job_id), status="not_found")
    if job.status in TERMINAL:
        return JobOutcome(job_id=job.id, status="skipped", attempts=job.attempts)

    if not _claim(db, job_id=job.id, now=now):
        return JobOutcome(job_id=job.id, status="skipped", attempts=job.attempts)
    # handlers read committed state, never rows cached in this session
    db.expire_all()
    db.refresh(job)

    if handlers is None:
        from .notification_handlers import HANDLERS

        handlers = HANDLERS

    ctx = Delivery(db, job, gateway or get_gateway())
    extra = {"job_id": job.id, "job_type": job.job_type}

    try:
        handler = handlers.get(job.job_type)
        if handler is None:
            raise LookupError(f"unknown job type: {job.job_type}")
        handler(ctx)
    except Exception as e:
        db.rollback()
        db.refresh(job)
        job.last_error = f"{type(e).__name__}: {e}"

        if isinstance(e, LookupError) or job.attempts >= job.max_attempts:
            job.status = "failed"
            job.finished_at = _utcnow()
            db.add(job)
            db.commit()
            log.error("notification job failed permanently", extra=extra, exc_info=True)
            return JobOutcome(job_id=job.id, status="failed", attempts=job.attempts, error=job.last_error)

        delay = backoff_seconds(job.attempts)
        job.status = "queued"
        job.next_attempt_at = now + timedelta(seconds=delay)
        db.add(job)
        db.commit()
        log.warning("notification job failed; retry scheduled in %ss", delay, extra=extra, exc_info=True)
        return JobOutcome(
            job_id=job.id, status="retry", attempts=job.attempts, retry_in_seconds=delay, error=job.last_error
        )

    job.status = "done"
    job.finished_at = _utcnow()
    job.last_error = None
    db.add(job)
    db.commit()
    log.info("notification job completed (%d sends)", len(ctx.sent), extra=extra)
    return JobOutcome(job_id=job.id, status="done", attempts=job.attempts)


# -----------------------------------------------------------------------------
# Recovery, retention, failed set
# -----------------------------------------------------------------------------
def due_job_ids(db: Session, *, now: Optional[datetime] = None, limit: int = 100) -> list[int]:
    now = now or _utcnow()
    return list(
        db.scalars(
            select(NotificationJob.id)
            .where(
                NotificationJob.status == "queued",
                or_(NotificationJob.next_attempt_at.is_(None), NotificationJob.next_attempt_at <= now),
            )
            .order_by(NotificationJob.id.asc())
            .limit(int(limit))
        ).all()
    )


def requeue_stuck_jobs(db: Session, *, now: Optional[datetime] = None) -> int:
    """
    A job left in "running" past the timeout belongs to a worker that died
    before acknowledging. Put it back (or park it if it used its attempts).
    """
    now = now or _utcnow()
    cutoff = now - timedelta(seconds=int(settings.notification_running_timeout_seconds))

    stuck = db.scalars(
        select(NotificationJob).where(
            NotificationJob.status == "running",
            NotificationJob.started_at < cutoff,
        )
    ).all()

    for job in stuck:
        job.last_error = "requeued after worker timeout"
        if job.attempts >= job.max_attempts:
            job.status = "failed"
            job.finished_at = now
        else:
            job.status = "queued"
            job.next_attempt_at = now
        db.add(job)
    db.commit()
    return len(stuck)


def prune_finished_jobs(db: Session, *, now: Optional[datetime] = None, retention_days: Optional[int] = None) -> int:
    """
    Done jobs are kept for inspection for the retention window. The window must
    outlive the idempotency scopes (month-keyed reminders), or a rerun could
    enqueue the same logical event again. Failed jobs stay until an operator
    requeues them.
    """
    now = now or _utcnow()
    days = int(retention_days if retention_days is not None else settings.notification_retention_days)
    cutoff = now - timedelta(days=days)
    res = db.execute(
        delete(NotificationJob)
        .where(and_(NotificationJob.status == "done", NotificationJob.finished_at < cutoff))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(res.rowcount or 0)


def list_failed_jobs(db: Session, *, limit: int = 50) -> list[NotificationJob]:
    return list(
        db.scalars(
            select(NotificationJob)
            .where(NotificationJob.status == "failed")
            .order_by(NotificationJob.finished_at.desc(), NotificationJob.id.desc())
            .limit(int(limit))
        ).all()
    )


def requeue_failed_job(db: Session, *, job_id: int) -> NotificationJob:
    job = db.scalar(select(NotificationJob).where(NotificationJob.id == int(job_id)))
    if job is None:
        raise HTTPException(status_code=404, detail="notification job not found")
    if job.status != "failed":
        raise HTTPException(status_code=409, detail=f"job is {job.status}, only failed jobs can be requeued")

    job.status = "queued"
    job.attempts = 0
    job.next_attempt_at = None
    job.finished_at = None
    db.add(job)
    db.commit()
    db.refresh(job)
    return job
