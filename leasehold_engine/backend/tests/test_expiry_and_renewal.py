# backend/tests/test_expiry_and_renewal.py
from __future__ import annotations

from datetime import date

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from leasehold.db import SessionLocal
from leasehold.models import Agreement, AgreementAuditEntry, NotificationJob, Property
from leasehold.services.agreement_service import (
    create_agreement,
    expiry_warning_date,
    propose_renewal,
    remove_tenant_from_property,
    respond_to_renewal,
    terminate_agreement,
)
from leasehold.services.rent_batches import run_expiry_sweep, run_reminder_sweep

from lease_factories import activate, mk_signed_agreement, mk_user, principal


def _active():
    """(landlord, tenant, property, agreement) for a 2026-01-15 -> 2027-01-15 lease, already paid."""
    db = SessionLocal()
    try:
        landlord, tenant, prop, agreement = mk_signed_agreement(db, start_date=date(2026, 1, 15))
        assert activate(db, agreement).outcome == "activated"
        return landlord, tenant, prop, agreement
    finally:
        db.close()


def _agreement(db, agreement_id: int) -> Agreement:
    db.expire_all()
    return db.scalar(select(Agreement).where(Agreement.id == agreement_id))


def _count_action(db, agreement_id: int, action: str) -> int:
    return len(
        db.scalars(
            select(AgreementAuditEntry.id).where(
                AgreementAuditEntry.agreement_id == agreement_id, AgreementAuditEntry.action == action
            )
        ).all()
    )


def test_expiry_sweep_expires_once():
    _, _, _, a = _active()

    db = SessionLocal()
    try:
        # the last day of the term is still active
        r = run_expiry_sweep(db, today=date(2027, 1, 15))
        assert r.expired == 0
        assert _agreement(db, a.id).status == "active"

        r = run_expiry_sweep(db, today=date(2027, 1, 16))
        assert r.expired == 1
        assert _agreement(db, a.id).status == "expired"

        again = run_expiry_sweep(db, today=date(2027, 1, 17))
        assert again.expired == 0
        assert _count_action(db, a.id, "AUTO_EXPIRED") == 1
    finally:
        db.close()


def test_expiry_ignores_agreements_that_never_activated():
    db = SessionLocal()
    try:
        _, _, _, a = mk_signed_agreement(db, start_date=date(2026, 1, 15))
        r = run_expiry_sweep(db, today=date(2028, 1, 1))
        assert r.expired == 0
        assert _agreement(db, a.id).status == "signed"
    finally:
        db.close()


def test_renewal_rejection_leaves_the_term_alone():
    landlord, tenant, _, a = _active()

    db = SessionLocal()
    try:
        propose_renewal(
            db, agreement_id=a.id, landlord=principal(landlord), new_end_date=date(2028, 1, 15), new_rent_amount=55000
        )
        respond_to_renewal(db, agreement_id=a.id, tenant=principal(tenant), accept=False)

        row = _agreement(db, a.id)
        assert row.renewal_status == "rejected"
        assert row.end_date == date(2027, 1, 15)
        assert row.rent_amount == 50000.0
        assert row.status == "active"
        assert _count_action(db, a.id, "RENEWAL_REJECTED") == 1
    finally:
        db.close()


def test_renewal_acceptance_extends_the_term():
    landlord, tenant, _, a = _active()

    db = SessionLocal()
    try:
        run_expiry_sweep(db, today=date(2027, 2, 1))
        assert _agreement(db, a.id).status == "expired"

        propose_renewal(
            db, agreement_id=a.id, landlord=principal(landlord), new_end_date=date(2028, 1, 15), new_rent_amount=55000
        )
        respond_to_renewal(db, agreement_id=a.id, tenant=principal(tenant), accept=True)

        row = _agreement(db, a.id)
        assert row.status == "active"
        assert row.renewal_status == "accepted"
        assert row.end_date == date(2028, 1, 15)
        assert row.rent_amount == 55000.0
        assert row.duration_months == 24

        jobs = db.scalars(select(NotificationJob.job_type).where(NotificationJob.job_type.like("RENEWAL_%"))).all()
        assert sorted(jobs) == ["RENEWAL_PROPOSED", "RENEWAL_RESPONSE"]
    finally:
        db.close()


def test_second_proposal_while_pending_is_a_conflict():
    landlord, tenant, _, a = _active()

    db = SessionLocal()
    try:
        propose_renewal(db, agreement_id=a.id, landlord=principal(landlord), new_end_date=date(2028, 1, 15))
        with pytest.raises(HTTPException) as ei:
            propose_renewal(db, agreement_id=a.id, landlord=principal(landlord), new_end_date=date(2029, 1, 15))
        assert ei.value.status_code == 409
        assert _agreement(db, a.id).renewal_new_end_date == date(2028, 1, 15)

        # once answered, a new proposal is allowed
        respond_to_renewal(db, agreement_id=a.id, tenant=principal(tenant), accept=False)
        propose_renewal(db, agreement_id=a.id, landlord=principal(landlord), new_end_date=date(2029, 1, 15))
        assert _agreement(db, a.id).renewal_status == "pending"
    finally:
        db.close()


def test_renewal_guards():
    landlord, tenant, _, a = _active()

    db = SessionLocal()
    try:
        with pytest.raises(HTTPException) as ei:
            propose_renewal(db, agreement_id=a.id, landlord=principal(tenant), new_end_date=date(2028, 1, 15))
        assert ei.value.status_code == 403

        with pytest.raises(HTTPException) as ei:
            propose_renewal(db, agreement_id=a.id, landlord=principal(landlord), new_end_date=date(2026, 6, 1))
        assert ei.value.status_code == 400

        with pytest.raises(HTTPException) as ei:
            respond_to_renewal(db, agreement_id=a.id, tenant=principal(tenant), accept=True)
        assert ei.value.status_code == 400
    finally:
        db.close()


def test_termination_withdraws_a_pending_renewal():
    landlord, tenant, prop, a = _active()

    db = SessionLocal()
    try:
        admin = mk_user(db, email="admin@test.local", role="admin")
        propose_renewal(db, agreement_id=a.id, landlord=principal(landlord), new_end_date=date(2028, 1, 15))
        terminate_agreement(db, agreement_id=a.id, actor=principal(admin), reason="lease breach")

        row = _agreement(db, a.id)
        assert row.renewal_status == "withdrawn"
        assert _count_action(db, a.id, "RENEWAL_WITHDRAWN") == 1

        with pytest.raises(HTTPException) as ei:
            respond_to_renewal(db, agreement_id=a.id, tenant=principal(tenant), accept=True)
        assert ei.value.status_code == 400

        row = _agreement(db, a.id)
        assert row.status == "terminated"
        assert row.end_date == date(2027, 1, 15)
        assert db.scalar(select(Property).where(Property.id == prop.id)).status == "available"
        assert _count_action(db, a.id, "RENEWAL_ACCEPTED") == 0
    finally:
        db.close()


def test_renewal_of_an_expired_lease_cannot_overlap_a_new_tenancy():
    landlord, tenant, prop, a = _active()

    db = SessionLocal()
    try:
        run_expiry_sweep(db, today=date(2027, 2, 1))
        propose_renewal(db, agreement_id=a.id, landlord=principal(landlord), new_end_date=date(2028, 1, 15))

        # the expired lease no longer holds the property, so it can be let again
        other = mk_user(db, email="next-tenant@test.local", role="tenant")
        b = create_agreement(
            db, landlord=principal(landlord), tenant_id=other.id, property_id=prop.id, start_date=date(2027, 3, 1)
        )
        assert b.status == "draft"

        with pytest.raises(HTTPException) as ei:
            respond_to_renewal(db, agreement_id=a.id, tenant=principal(tenant), accept=True)
        assert ei.value.status_code == 409

        row = _agreement(db, a.id)
        assert row.status == "expired"
        assert row.renewal_status == "pending"
        assert row.end_date == date(2027, 1, 15)

        # declining is still possible
        respond_to_renewal(db, agreement_id=a.id, tenant=principal(tenant), accept=False)
        assert _agreement(db, a.id).renewal_status == "rejected"
    finally:
        db.close()


def test_termination_frees_the_property():
    _, _, prop, a = _active()

    db = SessionLocal()
    try:
        admin = mk_user(db, email="admin@test.local", role="admin")
        remove_tenant_from_property(db, property_id=prop.id, actor=principal(admin), reason="lease breach")

        row = _agreement(db, a.id)
        assert row.status == "terminated"
        assert row.termination_reason == "lease breach"
        assert db.scalar(select(Property).where(Property.id == prop.id)).status == "available"
        assert _count_action(db, a.id, "TERMINATED_BY_ADMIN") == 1

        with pytest.raises(HTTPException) as ei:
            terminate_agreement(db, agreement_id=a.id, actor=principal(admin))
        assert ei.value.status_code == 409

        with pytest.raises(HTTPException) as ei:
            remove_tenant_from_property(db, property_id=prop.id, actor=principal(admin))
        assert ei.value.status_code == 404
    finally:
        db.close()


def test_reminder_sweep_enqueues_rent_and_expiry_notices_once():
    _, _, _, a = _active()

    db = SessionLocal()
    try:
        # entry 1 is due 2026-02-15; reminders go out three days ahead
        r = run_reminder_sweep(db, today=date(2026, 2, 12))
        assert r.reminders_enqueued == 1
        assert run_reminder_sweep(db, today=date(2026, 2, 12)).reminders_enqueued == 0
        assert run_reminder_sweep(db, today=date(2026, 2, 13)).reminders_enqueued == 0

        warn_on = expiry_warning_date(_agreement(db, a.id))
        assert warn_on == date(2026, 12, 16)
        r = run_reminder_sweep(db, today=warn_on)
        assert r.reminders_enqueued == 1

        keys = sorted(db.scalars(select(NotificationJob.idempotency_key).where(
            NotificationJob.job_type.in_(("RENT_DUE_REMINDER", "AGREEMENT_EXPIRY_WARNING"))
        )).all())
        assert keys == [f"expiry-{a.id}-2027-01-15", f"rent-{a.id}-2026-02"]
    finally:
        db.close()


def test_reminder_sweep_reads_fresh_rows_in_a_long_lived_session():
    landlord, tenant, _, a = _active()

    batch_db = SessionLocal()
    api_db = SessionLocal()
    try:
        # the batch session has the original term cached
        assert batch_db.scalar(select(Agreement).where(Agreement.id == a.id)).end_date == date(2027, 1, 15)
        batch_db.commit()

        propose_renewal(api_db, agreement_id=a.id, landlord=principal(landlord), new_end_date=date(2028, 1, 15))
        respond_to_renewal(api_db, agreement_id=a.id, tenant=principal(tenant), accept=True)

        # the old warning date is no longer the agreement's warning date
        r = run_reminder_sweep(batch_db, today=date(2026, 12, 16))
        assert r.reminders_enqueued == 0
        assert batch_db.scalar(select(Agreement).where(Agreement.id == a.id)).end_date == date(2028, 1, 15)
    finally:
        api_db.close()
        batch_db.close()
