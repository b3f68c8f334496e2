# backend/leasehold/services/rent_batches.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session

from ..config import settings
from ..domain.audit import append_audit
from ..domain.late_fees import assess_entry
from ..models import Agreement, RentScheduleEntry
from .agreement_service import expiry_warning_date
from .locks_service import batch_lock
from .notifications import NotificationType, dispatch_jobs, enqueue_notification

log = logging.getLogger("leasehold.batches")

LATE_FEES = "late_fees"
EXPIRY = "expiry"
REMINDERS = "reminders"


def _today() -> date:
    return datetime.utcnow().date()


def _month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


@dataclass
class SweepReport:
    batch: str
    run_date: date
    scanned: int = 0
    overdue_marked: int = 0
    fees_applied: int = 0
    expired: int = 0
    reminders_enqueued: int = 0
    failures: list[int] = field(default_factory=list)
    skipped: bool = False

    def as_dict(self) -> dict:
        return {
            "batch": self.batch,
            "run_date": self.run_date.isoformat(),
            "scanned": self.scanned,
            "overdue_marked": self.overdue_marked,
            "fees_applied": self.fees_applied,
            "expired": self.expired,
            "reminders_enqueued": self.reminders_enqueued,
            "failures": list(self.failures),
            "skipped": self.skipped,
        }


def _run_per_agreement(
    db: Session,
    *,
    report: SweepReport,
    agreement_ids: list[int],
    step: Callable[[Session, int], list[int]],
) -> None:
    """
    One transaction per agreement, read from fresh rows. A failure rolls back
    that agreement only and the sweep moves on. Jobs are handed to workers only
    after their agreement's commit.
    """
    for agreement_id in agreement_ids:
        report.scanned += 1
        before = (report.overdue_marked, report.fees_applied, report.expired, report.reminders_enqueued)
        try:
            db.expire_all()
            job_ids = step(db, agreement_id)
            db.commit()
        except Exception:
            db.rollback()
            report.overdue_marked, report.fees_applied, report.expired, report.reminders_enqueued = before
            report.failures.append(int(agreement_id))
            log.exception("%s sweep failed for agreement", report.batch, extra={"agreement_id": agreement_id, "batch": report.batch})
            continue
        dispatch_jobs(job_ids)


def _locked(db: Session, report: SweepReport, body: Callable[[], None]) -> SweepReport:
    with batch_lock(db, lock_key=f"batch:{report.batch}", ttl_seconds=int(settings.batch_lock_ttl_seconds)) as held:
        if not held:
            report.skipped = True
            log.info("%s sweep already running elsewhere; skipped", report.batch, extra={"batch": report.batch})
            return report
        body()
    log.info("%s sweep complete: %s", report.batch, report.as_dict(), extra={"batch": report.batch})
    return report


# -----------------------------------------------------------------------------
# Late fees / overdue
# -----------------------------------------------------------------------------
def _assess_agreement(db: Session, agreement_id: int, *, today: date, report: SweepReport) -> list[int]:
    agreement = db.scalar(select(Agreement).where(Agreement.id == int(agreement_id)))
    if agreement is None or agreement.status != "active":
        return []

    fee = float(agreement.late_fee_amount or 0.0)
    grace = int(agreement.late_fee_grace_period_days)
    job_ids: list[int] = []

    entries = db.scalars(
        select(RentScheduleEntry)
        .where(
            RentScheduleEntry.agreement_id == agreement.id,
            RentScheduleEntry.status.in_(("pending", "overdue")),
            RentScheduleEntry.due_date < today,
        )
        .order_by(RentScheduleEntry.seq.asc())
    ).all()

    for entry in entries:
        verdict = assess_entry(
            status=entry.status,
            due_date=entry.due_date,
            today=today,
            grace_period_days=grace,
            late_fee_applied=bool(entry.late_fee_applied),
        )

        if verdict.mark_overdue:
            res = db.execute(
                update(RentScheduleEntry)
                .where(RentScheduleEntry.id == entry.id, RentScheduleEntry.status == "pending")
                .values(status="overdue")
                .execution_options(synchronize_session=False)
            )
            if int(res.rowcount or 0) == 1:
                report.overdue_marked += 1
                job, created = enqueue_notification(
                    db,
                    job_type=NotificationType.RENT_OVERDUE,
                    data={
                        "agreement_id": agreement.id,
                        "seq": int(entry.seq),
                        "due_date": entry.due_date.isoformat(),
                        "amount": float(entry.amount),
                    },
                    idempotency_key=f"overdue-{agreement.id}-{_month_key(entry.due_date)}",
                )
                if created:
                    job_ids.append(job.id)

        if verdict.apply_fee:
            # the status + flag guard makes a second run (or a second instance) a no-op
            res = db.execute(
                update(RentScheduleEntry)
                .where(
                    RentScheduleEntry.id == entry.id,
                    RentScheduleEntry.status == "overdue",
                    RentScheduleEntry.late_fee_applied.is_(False),
                )
                .values(
                    status="late_fee_applied",
                    late_fee_applied=True,
                    late_fee_amount=fee,
                    amount=RentScheduleEntry.amount + fee,
                )
                .execution_options(synchronize_session=False)
            )
            if int(res.rowcount or 0) != 1:
                continue

            report.fees_applied += 1
            new_amount = round(float(entry.amount) + fee, 2)
            append_audit(
                db,
                agreement_id=agreement.id,
                action="LATE_FEE_APPLIED",
                detail=(
                    f"Late fee of {fee:.2f} applied to {entry.due_date.isoformat()} rent entry. "
                    f"{verdict.days_past_due} days past due."
                ),
            )
            job, created = enqueue_notification(
                db,
                job_type=NotificationType.LATE_FEE_APPLIED,
                data={
                    "agreement_id": agreement.id,
                    "due_date": entry.due_date.isoformat(),
                    "late_fee_amount": fee,
                    "new_amount": new_amount,
                    "days_past_due": verdict.days_past_due,
                },
                idempotency_key=f"late-fee-{agreement.id}-{entry.seq}",
            )
            if created:
                job_ids.append(job.id)

    return job_ids


def run_late_fee_sweep(db: Session, *, today: Optional[date] = None) -> SweepReport:
    """
    Daily overdue/late-fee assessment over active agreements that have a
    schedule and a non-zero late fee.

    pending and past due          -> overdue (+ RENT_OVERDUE, one per agreement and month)
    overdue and past grace        -> late_fee_applied, fee folded into amount, once
    Both can happen to one entry in the same run. Running it again the same
    day changes nothing.
    """
    today = today or _today()
    report = SweepReport(batch=LATE_FEES, run_date=today)

    def body() -> None:
        has_entries = exists().where(RentScheduleEntry.agreement_id == Agreement.id)
        ids = list(
            db.scalars(
                select(Agreement.id)
                .where(Agreement.status == "active", Agreement.late_fee_amount > 0, has_entries)
                .order_by(Agreement.id.asc())
            ).all()
        )
        _run_per_agreement(
            db,
            report=report,
            agreement_ids=ids,
            step=lambda s, aid: _assess_agreement(s, aid, today=today, report=report),
        )

    return _locked(db, report, body)


# -----------------------------------------------------------------------------
# Expiry
# -----------------------------------------------------------------------------
def _expire_agreement(db: Session, agreement_id: int, *, today: date, report: SweepReport) -> list[int]:
    res = db.execute(
        update(Agreement)
        .where(Agreement.id == int(agreement_id), Agreement.status == "active", Agreement.end_date < today)
        .values(status="expired", updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        return []
    report.expired += 1
    append_audit(
        db,
        agreement_id=int(agreement_id),
        action="AUTO_EXPIRED",
        detail="Lease automatically marked as expired by scheduler.",
    )
    return []


def run_expiry_sweep(db: Session, *, today: Optional[date] = None) -> SweepReport:
    """Active agreements whose end date has passed become expired. No payment or schedule effects."""
    today = today or _today()
    report = SweepReport(batch=EXPIRY, run_date=today)

    def body() -> None:
        ids = list(
            db.scalars(
                select(Agreement.id)
                .where(Agreement.status == "active", Agreement.end_date < today)
                .order_by(Agreement.id.asc())
            ).all()
        )
        _run_per_agreement(
            db,
            report=report,
            agreement_ids=ids,
            step=lambda s, aid: _expire_agreement(s, aid, today=today, report=report),
        )

    return _locked(db, report, body)


# -----------------------------------------------------------------------------
# Morning reminders
# -----------------------------------------------------------------------------
def _remind_agreement(db: Session, agreement_id: int, *, today: date, report: SweepReport) -> list[int]:
    agreement = db.scalar(select(Agreement).where(Agreement.id == int(agreement_id)))
    if agreement is None or agreement.status != "active":
        return []

    job_ids: list[int] = []
    remind_for = today + timedelta(days=int(settings.rent_reminder_days_before))

    due = db.scalars(
        select(RentScheduleEntry).where(
            RentScheduleEntry.agreement_id == agreement.id,
            RentScheduleEntry.status == "pending",
            RentScheduleEntry.due_date == remind_for,
        )
    ).all()
    for entry in due:
        job, created = enqueue_notification(
            db,
            job_type=NotificationType.RENT_DUE_REMINDER,
            data={
                "agreement_id": agreement.id,
                "seq": int(entry.seq),
                "due_date": entry.due_date.isoformat(),
                "amount": float(entry.amount),
            },
            idempotency_key=f"rent-{agreement.id}-{_month_key(entry.due_date)}",
        )
        if created:
            report.reminders_enqueued += 1
            job_ids.append(job.id)

    if expiry_warning_date(agreement) == today:
        job, created = enqueue_notification(
            db,
            job_type=NotificationType.AGREEMENT_EXPIRY_WARNING,
            data={"agreement_id": agreement.id, "end_date": agreement.end_date.isoformat()},
            idempotency_key=f"expiry-{agreement.id}-{agreement.end_date.isoformat()}",
        )
        if created:
            report.reminders_enqueued += 1
            job_ids.append(job.id)

    return job_ids


def run_reminder_sweep(db: Session, *, today: Optional[date] = None) -> SweepReport:
    """
    Rent-due reminders a few days ahead of each pending entry, and the expiry
    warning when an agreement's notice window opens.
    """
    today = today or _today()
    report = SweepReport(batch=REMINDERS, run_date=today)

    def body() -> None:
        ids = list(
            db.scalars(select(Agreement.id).where(Agreement.status == "active").order_by(Agreement.id.asc())).all()
        )
        _run_per_agreement(
            db,
            report=report,
            agreement_ids=ids,
            step=lambda s, aid: _remind_agreement(s, aid, today=today, report=report),
        )

    return _locked(db, report, body)
