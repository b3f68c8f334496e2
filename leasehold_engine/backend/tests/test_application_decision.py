# backend/tests/test_application_decision.py
from __future__ import annotations

import json

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from leasehold.db import SessionLocal
from leasehold.models import Agreement, AgreementAuditEntry, Application, NotificationJob
from leasehold.services.application_service import decide_application

from lease_factories import mk_parties, mk_user, principal


def _application(db, *, landlord_id: int, tenant_id: int, property_id: int) -> Application:
    row = Application(property_id=property_id, tenant_id=tenant_id, landlord_id=landlord_id, status="pending")
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def test_acceptance_creates_a_draft_agreement():
    db = SessionLocal()
    try:
        landlord, tenant, prop = mk_parties(db)
        app_row = _application(db, landlord_id=landlord.id, tenant_id=tenant.id, property_id=prop.id)

        out = decide_application(db, application_id=app_row.id, landlord=principal(landlord), status="accepted")
        assert out.status == "accepted"
        assert out.decided_at is not None
        assert out.agreement_id is not None

        a = db.scalar(select(Agreement).where(Agreement.id == out.agreement_id))
        assert a.status == "draft"
        assert a.application_id == app_row.id
        assert a.tenant_id == tenant.id
        assert a.landlord_id == landlord.id
        assert a.duration_months == 12
        assert a.rent_amount == prop.monthly_rent

        actions = db.scalars(select(AgreementAuditEntry.action).where(AgreementAuditEntry.agreement_id == a.id)).all()
        assert list(actions) == ["CREATED_FROM_APPLICATION"]

        job = db.scalar(select(NotificationJob).where(NotificationJob.job_type == "APPLICATION_ACCEPTED"))
        data = json.loads(job.payload_json)
        assert data["agreement_id"] == a.id
        assert data["tenant_email"] == "tenant@test.local"
        assert data["property_title"] == "Flat 4B"
    finally:
        db.close()


def test_rejection_creates_nothing_and_decisions_are_final():
    db = SessionLocal()
    try:
        landlord, tenant, prop = mk_parties(db)
        app_row = _application(db, landlord_id=landlord.id, tenant_id=tenant.id, property_id=prop.id)

        out = decide_application(db, application_id=app_row.id, landlord=principal(landlord), status="rejected")
        assert out.status == "rejected"
        assert out.agreement_id is None
        assert db.scalars(select(Agreement)).all() == []

        with pytest.raises(HTTPException) as ei:
            decide_application(db, application_id=app_row.id, landlord=principal(landlord), status="accepted")
        assert ei.value.status_code == 409

        keys = db.scalars(select(NotificationJob.idempotency_key)).all()
        assert list(keys) == [f"application-rejected-{app_row.id}"]
    finally:
        db.close()


def test_only_the_owning_landlord_decides():
    db = SessionLocal()
    try:
        landlord, tenant, prop = mk_parties(db)
        app_row = _application(db, landlord_id=landlord.id, tenant_id=tenant.id, property_id=prop.id)
        other = mk_user(db, email="someone@test.local", role="landlord")

        with pytest.raises(HTTPException) as ei:
            decide_application(db, application_id=app_row.id, landlord=principal(other), status="accepted")
        assert ei.value.status_code == 403

        with pytest.raises(HTTPException) as ei:
            decide_application(db, application_id=app_row.id, landlord=principal(landlord), status="maybe")
        assert ei.value.status_code == 400
    finally:
        db.close()
