# backend/tests/test_payment_webhook.py
from __future__ import annotations

import json
from datetime import date, datetime

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from leasehold.db import SessionLocal
from leasehold.main import create_app
from leasehold.models import (
    Agreement,
    AgreementAuditEntry,
    NotificationJob,
    Payment,
    Property,
    RentScheduleEntry,
)
from leasehold.services.payment_reconciliation import handle_webhook, next_receipt_number

from lease_factories import checkout_event, mk_draft_agreement, mk_parties, mk_signed_agreement, signed_body

NOW = datetime(2026, 1, 15, 12, 0)


def _count(db, model, *where) -> int:
    return int(db.scalar(select(func.count()).select_from(model).where(*where)) or 0)


def _deliver(event: dict, *, now: datetime = NOW):
    raw, header = signed_body(event)
    db = SessionLocal()
    try:
        return handle_webhook(db, raw_body=raw, signature_header=header, now=now)
    finally:
        db.close()


def test_checkout_completed_activates_the_lease():
    db = SessionLocal()
    try:
        _, _, prop, agreement = mk_signed_agreement(db, start_date=date(2026, 1, 15))
        aid, pid = agreement.id, prop.id
    finally:
        db.close()

    result = _deliver(checkout_event(aid, session_id="cs_live_1", payment_intent="pi_live_1"))
    assert result.outcome == "activated"
    assert result.receipt_number == "RCP-2026-00001"

    db = SessionLocal()
    try:
        a = db.scalar(select(Agreement).where(Agreement.id == aid))
        assert a.status == "active"
        assert a.is_paid is True
        assert a.activated_at == NOW
        assert a.payment_session_id == "cs_live_1"

        entries = list(
            db.scalars(
                select(RentScheduleEntry).where(RentScheduleEntry.agreement_id == aid).order_by(RentScheduleEntry.seq)
            ).all()
        )
        assert len(entries) == 12
        assert entries[0].status == "paid"
        assert entries[0].external_payment_ref == "pi_live_1"
        assert all(e.status == "pending" for e in entries[1:])

        pay = db.scalar(select(Payment).where(Payment.agreement_id == aid))
        assert pay.payment_type == "initial"
        assert pay.status == "paid"
        assert pay.amount == 100000.0
        assert pay.external_session_id == "cs_live_1"

        prop = db.scalar(select(Property).where(Property.id == pid))
        assert prop.status == "occupied"
        assert prop.is_listed is False

        assert _count(db, AgreementAuditEntry, AgreementAuditEntry.action == "LEASE_ACTIVATED") == 1
        assert _count(db, NotificationJob, NotificationJob.job_type == "PAYMENT_CONFIRMED") == 1
    finally:
        db.close()


def test_duplicate_delivery_is_acknowledged_without_side_effects():
    db = SessionLocal()
    try:
        _, _, _, agreement = mk_signed_agreement(db)
        aid = agreement.id
    finally:
        db.close()

    event = checkout_event(aid, session_id="cs_dup")
    assert _deliver(event).outcome == "activated"
    second = _deliver(event)
    assert second.outcome == "duplicate"

    # a different session for an already-paid agreement is a duplicate too
    assert _deliver(checkout_event(aid, session_id="cs_other")).outcome == "duplicate"

    db = SessionLocal()
    try:
        assert _count(db, Payment, Payment.agreement_id == aid) == 1
        assert _count(db, RentScheduleEntry, RentScheduleEntry.agreement_id == aid) == 12
        assert _count(db, AgreementAuditEntry, AgreementAuditEntry.action == "LEASE_ACTIVATED") == 1
        assert _count(db, NotificationJob, NotificationJob.job_type == "PAYMENT_CONFIRMED") == 1
    finally:
        db.close()


def test_bad_signature_is_rejected_and_nothing_changes():
    db = SessionLocal()
    try:
        _, _, _, agreement = mk_signed_agreement(db)
        aid = agreement.id

        raw = json.dumps(checkout_event(aid)).encode("utf-8")
        with pytest.raises(HTTPException) as ei:
            handle_webhook(db, raw_body=raw, signature_header="t=1700000000,v1=deadbeef", now=NOW)
        assert ei.value.status_code == 400
        assert ei.value.detail.startswith("Webhook Error")

        # signed with the wrong secret
        _, forged = signed_body(checkout_event(aid), secret="whsec_other")
        with pytest.raises(HTTPException):
            handle_webhook(db, raw_body=raw, signature_header=forged, now=NOW)

        db.expire_all()
        a = db.scalar(select(Agreement).where(Agreement.id == aid))
        assert a.status == "signed"
        assert a.is_paid is False
        assert _count(db, Payment) == 0
        assert _count(db, RentScheduleEntry) == 0
    finally:
        db.close()


def test_tampered_body_fails_verification():
    db = SessionLocal()
    try:
        _, _, _, agreement = mk_signed_agreement(db)
        raw, header = signed_body(checkout_event(agreement.id, amount_total=100))
        tampered = raw.replace(b'"amount_total": 100', b'"amount_total": 999')
        with pytest.raises(HTTPException) as ei:
            handle_webhook(db, raw_body=tampered, signature_header=header, now=NOW)
        assert ei.value.status_code == 400
    finally:
        db.close()


def test_unsigned_agreement_is_not_activated():
    db = SessionLocal()
    try:
        landlord, tenant, prop = mk_parties(db)
        draft = mk_draft_agreement(db, landlord=landlord, tenant=tenant, prop=prop)
        aid = draft.id
    finally:
        db.close()

    result = _deliver(checkout_event(aid))
    assert result.outcome == "not_signed"

    db = SessionLocal()
    try:
        a = db.scalar(select(Agreement).where(Agreement.id == aid))
        assert a.status == "draft"
        assert a.is_paid is False
        assert _count(db, Payment) == 0
    finally:
        db.close()


def test_unknown_agreement_is_acknowledged():
    assert _deliver(checkout_event(424242)).outcome == "agreement_not_found"
    assert _deliver(checkout_event("not-a-number")).outcome == "agreement_not_found"


def test_other_event_types_are_acknowledged():
    failed = {"type": "payment_intent.payment_failed", "data": {"object": {"id": "pi_failed"}}}
    assert _deliver(failed).outcome == "payment_failed"
    assert _deliver({"type": "customer.created", "data": {"object": {}}}).outcome == "ignored"


@pytest.mark.parametrize(
    "event",
    [
        {"type": "checkout.session.completed", "data": ["x"]},
        {"type": "checkout.session.completed", "data": "x"},
        {"type": "checkout.session.completed", "data": {"object": ["x"]}},
        {"type": "checkout.session.completed"},
        {"type": "payment_intent.payment_failed", "data": {"object": "pi_x"}},
    ],
)
def test_malformed_events_are_acknowledged_as_invalid(event):
    assert _deliver(event).outcome == "invalid"


def test_odd_metadata_and_amount_shapes_do_not_crash():
    db = SessionLocal()
    try:
        _, _, _, agreement = mk_signed_agreement(db)
        aid = agreement.id
    finally:
        db.close()

    no_metadata = checkout_event(aid)
    no_metadata["data"]["object"]["metadata"] = ["agreementId", str(aid)]
    assert _deliver(no_metadata).outcome == "agreement_not_found"

    odd_amount = checkout_event(aid, session_id="cs_odd_amount")
    odd_amount["data"]["object"]["amount_total"] = "lots"
    assert _deliver(odd_amount).outcome == "activated"

    db = SessionLocal()
    try:
        payment = db.scalar(select(Payment).where(Payment.external_session_id == "cs_odd_amount"))
        assert payment.amount == 100000.0
    finally:
        db.close()


def test_rent_checkout_for_an_already_paid_entry_changes_nothing():
    db = SessionLocal()
    try:
        _, _, _, agreement = mk_signed_agreement(db)
        aid = agreement.id
    finally:
        db.close()

    assert _deliver(checkout_event(aid, session_id="cs_init")).outcome == "activated"

    # entry 0 was settled by the initial checkout
    again = checkout_event(aid, session_id="cs_rent_0", amount_total=5_000_000, purpose="rent", schedule_seq=0)
    assert _deliver(again).outcome == "duplicate"

    db = SessionLocal()
    try:
        assert _count(db, Payment, Payment.payment_type == "rent") == 0
    finally:
        db.close()


def test_rent_checkout_pays_one_schedule_entry():
    db = SessionLocal()
    try:
        _, _, _, agreement = mk_signed_agreement(db)
        aid = agreement.id
    finally:
        db.close()

    assert _deliver(checkout_event(aid, session_id="cs_init")).outcome == "activated"

    rent_event = checkout_event(aid, session_id="cs_rent_1", amount_total=5_000_000, purpose="rent", schedule_seq=1)
    paid_at = datetime(2026, 2, 14, 9, 0)
    result = _deliver(rent_event, now=paid_at)
    assert result.outcome == "rent_recorded"
    assert result.receipt_number == "RCP-2026-00002"

    assert _deliver(rent_event, now=paid_at).outcome == "duplicate"

    db = SessionLocal()
    try:
        e = db.scalar(select(RentScheduleEntry).where(RentScheduleEntry.agreement_id == aid, RentScheduleEntry.seq == 1))
        assert e.status == "paid"
        assert e.paid_amount == 50000.0
        assert e.paid_date == paid_at

        rent_payments = list(db.scalars(select(Payment).where(Payment.payment_type == "rent")).all())
        assert len(rent_payments) == 1
        assert rent_payments[0].due_date == date(2026, 2, 15)
        assert _count(db, AgreementAuditEntry, AgreementAuditEntry.action == "RENT_PAID") == 1
    finally:
        db.close()


def test_receipt_numbers_count_per_year():
    db = SessionLocal()
    try:
        assert next_receipt_number(db, year=2026) == "RCP-2026-00001"
        assert next_receipt_number(db, year=2026) == "RCP-2026-00002"
        assert next_receipt_number(db, year=2027) == "RCP-2027-00001"
        db.commit()
    finally:
        db.close()


def test_webhook_endpoint_verifies_raw_body():
    db = SessionLocal()
    try:
        _, _, _, agreement = mk_signed_agreement(db)
        aid = agreement.id
    finally:
        db.close()

    client = TestClient(create_app())

    raw, header = signed_body(checkout_event(aid, session_id="cs_http"))
    r = client.post(
        "/api/payments/webhook",
        content=raw,
        headers={"Stripe-Signature": header, "Content-Type": "application/json"},
    )
    assert r.status_code == 200, r.text
    assert r.json() == {"received": True, "outcome": "activated"}

    r = client.post(
        "/api/payments/webhook",
        content=raw,
        headers={"Stripe-Signature": header, "Content-Type": "application/json"},
    )
    assert r.status_code == 200
    assert r.json()["outcome"] == "duplicate"

    r = client.post("/api/payments/webhook", content=raw, headers={"Content-Type": "application/json"})
    assert r.status_code == 400
