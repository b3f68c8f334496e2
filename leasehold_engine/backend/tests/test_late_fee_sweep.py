# backend/tests/test_late_fee_sweep.py
from __future__ import annotations

from datetime import date

from sqlalchemy import select

from leasehold.db import SessionLocal
from leasehold.models import AgreementAuditEntry, NotificationJob, RentScheduleEntry
from leasehold.services.rent_batches import run_late_fee_sweep

from lease_factories import activate, mk_signed_agreement


def _entry(db, agreement_id: int, seq: int) -> RentScheduleEntry:
    return db.scalar(
        select(RentScheduleEntry).where(RentScheduleEntry.agreement_id == agreement_id, RentScheduleEntry.seq == seq)
    )


def _audit_actions(db, agreement_id: int) -> list[str]:
    return list(
        db.scalars(
            select(AgreementAuditEntry.action)
            .where(AgreementAuditEntry.agreement_id == agreement_id)
            .order_by(AgreementAuditEntry.id.asc())
        ).all()
    )


def _jobs(db, job_type: str) -> list[NotificationJob]:
    return list(db.scalars(select(NotificationJob).where(NotificationJob.job_type == job_type)).all())


def _active_agreement(**property_kwargs) -> int:
    db = SessionLocal()
    try:
        _, _, _, agreement = mk_signed_agreement(db, start_date=date(2026, 1, 15), **property_kwargs)
        assert activate(db, agreement).outcome == "activated"
        return agreement.id
    finally:
        db.close()


def test_entry_goes_overdue_then_gets_one_late_fee():
    aid = _active_agreement()

    db = SessionLocal()
    try:
        # due day itself: nothing
        r = run_late_fee_sweep(db, today=date(2026, 2, 15))
        assert r.overdue_marked == 0 and r.fees_applied == 0

        r = run_late_fee_sweep(db, today=date(2026, 2, 16))
        assert r.overdue_marked == 1
        assert r.fees_applied == 0
        db.expire_all()
        assert _entry(db, aid, 1).status == "overdue"
        assert len(_jobs(db, "RENT_OVERDUE")) == 1

        # still inside the grace period
        r = run_late_fee_sweep(db, today=date(2026, 2, 20))
        assert r.fees_applied == 0

        r = run_late_fee_sweep(db, today=date(2026, 2, 21))
        assert r.fees_applied == 1
        db.expire_all()
        e = _entry(db, aid, 1)
        assert e.status == "late_fee_applied"
        assert e.late_fee_applied is True
        assert e.late_fee_amount == 2000.0
        assert e.amount == 52000.0

        fee_jobs = _jobs(db, "LATE_FEE_APPLIED")
        assert len(fee_jobs) == 1
        assert fee_jobs[0].idempotency_key == f"late-fee-{aid}-1"
        assert '"new_amount": 52000.0' in fee_jobs[0].payload_json
        assert '"days_past_due": 6' in fee_jobs[0].payload_json

        # the following month's entry is untouched
        assert _entry(db, aid, 2).status == "pending"
    finally:
        db.close()


def test_rerunning_the_sweep_changes_nothing():
    aid = _active_agreement()

    db = SessionLocal()
    try:
        run_late_fee_sweep(db, today=date(2026, 2, 16))
        run_late_fee_sweep(db, today=date(2026, 2, 21))
        again = run_late_fee_sweep(db, today=date(2026, 2, 21))
        assert again.overdue_marked == 0
        assert again.fees_applied == 0
        assert again.failures == []

        db.expire_all()
        e = _entry(db, aid, 1)
        assert e.amount == 52000.0
        assert _audit_actions(db, aid).count("LATE_FEE_APPLIED") == 1
        assert len(_jobs(db, "RENT_OVERDUE")) == 1
        assert len(_jobs(db, "LATE_FEE_APPLIED")) == 1
    finally:
        db.close()


def test_first_run_after_grace_marks_and_fees_in_one_pass():
    aid = _active_agreement()

    db = SessionLocal()
    try:
        r = run_late_fee_sweep(db, today=date(2026, 2, 25))
        assert r.overdue_marked == 1
        assert r.fees_applied == 1
        db.expire_all()
        assert _entry(db, aid, 1).status == "late_fee_applied"
    finally:
        db.close()


def test_zero_grace_period_is_honored():
    aid = _active_agreement(grace_days=0)

    db = SessionLocal()
    try:
        r = run_late_fee_sweep(db, today=date(2026, 2, 16))
        assert r.overdue_marked == 1
        assert r.fees_applied == 1
        db.expire_all()
        assert _entry(db, aid, 1).amount == 52000.0
    finally:
        db.close()


def test_agreement_without_late_fee_is_not_swept():
    aid = _active_agreement(late_fee_amount=0.0)

    db = SessionLocal()
    try:
        r = run_late_fee_sweep(db, today=date(2026, 3, 1))
        assert r.scanned == 0
        db.expire_all()
        assert _entry(db, aid, 1).status == "pending"
    finally:
        db.close()


def test_paid_entries_are_left_alone():
    aid = _active_agreement()

    db = SessionLocal()
    try:
        e = _entry(db, aid, 1)
        e.status = "paid"
        db.add(e)
        db.commit()

        r = run_late_fee_sweep(db, today=date(2026, 3, 1))
        assert r.overdue_marked == 0
        assert r.fees_applied == 0
        db.expire_all()
        assert _entry(db, aid, 0).status == "paid"
        assert _entry(db, aid, 1).status == "paid"
        assert _entry(db, aid, 1).amount == 50000.0
    finally:
        db.close()


def test_multiple_overdue_months_each_get_one_fee():
    aid = _active_agreement()

    db = SessionLocal()
    try:
        r = run_late_fee_sweep(db, today=date(2026, 4, 1))
        # entries due Feb 15 and Mar 15
        assert r.overdue_marked == 2
        assert r.fees_applied == 2
        keys = sorted(j.idempotency_key for j in _jobs(db, "RENT_OVERDUE"))
        assert keys == [f"overdue-{aid}-2026-02", f"overdue-{aid}-2026-03"]
    finally:
        db.close()


def test_signed_but_unpaid_agreement_is_ignored():
    db = SessionLocal()
    try:
        mk_signed_agreement(db, start_date=date(2026, 1, 15))
        r = run_late_fee_sweep(db, today=date(2026, 3, 1))
        assert r.scanned == 0
        assert not r.skipped
    finally:
        db.close()
