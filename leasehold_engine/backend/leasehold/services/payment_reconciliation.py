# backend/leasehold/services/payment_reconciliation.py
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from fastapi import HTTPException
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import Principal
from ..config import settings
from ..domain.audit import append_audit
from ..domain.rent_schedule import UNPAID_STATUSES, can_transition, generate_rent_schedule, summarize_schedule
from ..models import Agreement, Payment, Property, ReceiptCounter, RentScheduleEntry
from .notifications import NotificationType, dispatch_jobs, enqueue_notification
from .ownership import must_get_agreement, must_get_agreement_for_party, party_role
from .webhook_signature import WebhookSignatureError, verify_webhook_signature

log = logging.getLogger("leasehold.payments")

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_FAILED = "payment_intent.payment_failed"


def _utcnow() -> datetime:
    return datetime.utcnow()


@dataclass(frozen=True)
class ReconcileResult:
    # activated|rent_recorded|duplicate|agreement_not_found|not_signed|not_active|invalid|payment_failed|ignored
    outcome: str
    agreement_id: Optional[int] = None
    payment_id: Optional[int] = None
    receipt_number: Optional[str] = None
    detail: str = ""

    def as_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "agreement_id": self.agreement_id,
            "payment_id": self.payment_id,
            "receipt_number": self.receipt_number,
            "detail": self.detail,
        }


# -----------------------------------------------------------------------------
# Receipt numbers
# -----------------------------------------------------------------------------
def next_receipt_number(db: Session, *, year: int) -> str:
    """
    RCP-<year>-<00042>. The per-year counter row is bumped with an UPDATE so
    concurrent payments serialize on the row lock instead of counting rows.
    Runs inside the caller's transaction.
    """
    for _ in range(2):
        res = db.execute(
            update(ReceiptCounter)
            .where(ReceiptCounter.year == int(year))
            .values(value=ReceiptCounter.value + 1)
            .execution_options(synchronize_session=False)
        )
        if int(res.rowcount or 0) == 1:
            break
        try:
            with db.begin_nested():
                db.add(ReceiptCounter(year=int(year), value=1))
            break
        except IntegrityError:
            # first payment of the year raced another; bump the row it created
            continue

    value = db.scalar(select(ReceiptCounter.value).where(ReceiptCounter.year == int(year)))
    return f"{settings.receipt_prefix}-{int(year)}-{int(value):05d}"


# -----------------------------------------------------------------------------
# Webhook entrypoint
# -----------------------------------------------------------------------------
def handle_webhook(
    db: Session,
    *,
    raw_body: bytes,
    signature_header: Optional[str],
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """
    Signature first, on the untouched bytes. A bad signature is a 400 with
    nothing written and nothing enqueued. Everything past the signature is
    acknowledged, including events we cannot act on, so the processor does
    not redeliver forever.
    """
    try:
        verify_webhook_signature(
            raw_body,
            signature_header,
            secret=settings.payment_webhook_secret,
            tolerance_seconds=int(settings.payment_webhook_tolerance_seconds),
        )
    except WebhookSignatureError as e:
        log.warning("payment webhook rejected: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise HTTPException(status_code=400, detail="Webhook Error: payload is not valid JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Webhook Error: payload must be an object")

    event_type = str(event.get("type") or "")
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    extra = {"event_type": event_type}

    if event_type in (CHECKOUT_COMPLETED, PAYMENT_FAILED) and not isinstance(obj, dict):
        # signed but malformed: acknowledged, never retried
        log.warning("payment webhook without a data.object; acknowledged", extra=extra)
        return ReconcileResult(outcome="invalid", detail="event has no data.object")

    if event_type == CHECKOUT_COMPLETED:
        metadata = _metadata(obj)
        if str(metadata.get("purpose") or "").lower() == "rent":
            return record_rent_payment(db, session=obj, now=now)
        return reconcile_checkout_completed(db, session=obj, now=now)

    if event_type == PAYMENT_FAILED:
        # logged only; the tenant retries checkout from the client
        log.error("payment failed: %s", obj.get("id"), extra=extra)
        return ReconcileResult(outcome="payment_failed", detail=str(obj.get("id") or ""))

    log.info("payment webhook ignored", extra=extra)
    return ReconcileResult(outcome="ignored", detail=event_type)


def _metadata(session: dict[str, Any]) -> dict[str, Any]:
    metadata = session.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _metadata_agreement_id(session: dict[str, Any]) -> Optional[int]:
    metadata = _metadata(session)
    raw = metadata.get("agreementId", metadata.get("agreement_id"))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _session_amount(session: dict[str, Any], fallback: float) -> float:
    total = session.get("amount_total")
    if total is None:
        return float(fallback)
    try:
        return round(float(total) / 100.0, 2)
    except (TypeError, ValueError):
        return float(fallback)


def _existing_payment(db: Session, session_id: str) -> Optional[Payment]:
    return db.scalar(select(Payment).where(Payment.external_session_id == session_id))


# -----------------------------------------------------------------------------
# Initial payment -> activation
# -----------------------------------------------------------------------------
def reconcile_checkout_completed(
    db: Session, *, session: dict[str, Any], now: Optional[datetime] = None
) -> ReconcileResult:
    """
    Activates a signed agreement from its initial checkout.

    Replays are recognized by the processor's session id (unique on both the
    agreement and the payment row) as well as by is_paid. Activation, schedule,
    payment, property flip, audit entry and notification job commit together
    or not at all.
    """
    now = now or _utcnow()
    session_id = str(session.get("id") or "").strip()
    agreement_id = _metadata_agreement_id(session)

    if not session_id:
        log.warning("checkout event without session id; acknowledged")
        return ReconcileResult(outcome="invalid", agreement_id=agreement_id, detail="missing session id")

    if agreement_id is None:
        log.warning("checkout event without agreement metadata; acknowledged")
        return ReconcileResult(outcome="agreement_not_found", detail="missing agreementId metadata")

    extra = {"agreement_id": agreement_id}
    agreement = db.scalar(select(Agreement).where(Agreement.id == agreement_id))
    if agreement is None:
        log.warning("webhook: agreement not found", extra=extra)
        return ReconcileResult(outcome="agreement_not_found", agreement_id=agreement_id)

    prior = _existing_payment(db, session_id)
    if prior is not None or agreement.is_paid:
        log.info("webhook: duplicate checkout event ignored", extra=extra)
        return ReconcileResult(
            outcome="duplicate",
            agreement_id=agreement.id,
            payment_id=prior.id if prior else None,
            receipt_number=prior.receipt_number if prior else None,
        )

    if agreement.status != "signed":
        log.warning("webhook: agreement is %s, expected signed; no change", agreement.status, extra=extra)
        return ReconcileResult(outcome="not_signed", agreement_id=agreement.id, detail=agreement.status)

    payment_intent = session.get("payment_intent")
    amount = _session_amount(session, fallback=float(agreement.rent_amount) + float(agreement.deposit_amount))

    try:
        res = db.execute(
            update(Agreement)
            .where(Agreement.id == agreement.id, Agreement.status == "signed", Agreement.is_paid.is_(False))
            .values(status="active", is_paid=True, activated_at=now, payment_session_id=session_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if int(res.rowcount or 0) != 1:
            db.rollback()
            log.info("webhook: agreement activated concurrently; treated as duplicate", extra=extra)
            return ReconcileResult(outcome="duplicate", agreement_id=agreement.id)

        for line in generate_rent_schedule(
            start_date=agreement.start_date,
            duration_months=int(agreement.duration_months),
            rent_amount=float(agreement.rent_amount),
            paid_on=now,
        ):
            db.add(
                RentScheduleEntry(
                    agreement_id=agreement.id,
                    external_payment_ref=payment_intent if line.seq == 0 else None,
                    **line.as_dict(),
                )
            )

        receipt = next_receipt_number(db, year=now.year)
        payment = Payment(
            agreement_id=agreement.id,
            tenant_id=agreement.tenant_id,
            landlord_id=agreement.landlord_id,
            property_id=agreement.property_id,
            amount=amount,
            payment_type="initial",
            status="paid",
            due_date=agreement.start_date,
            paid_at=now,
            external_session_id=session_id,
            external_payment_intent=payment_intent,
            receipt_number=receipt,
            notes="Security deposit and first month rent",
            created_at=now,
        )
        db.add(payment)

        prop = db.scalar(select(Property).where(Property.id == agreement.property_id))
        if prop is not None:
            prop.status = "occupied"
            prop.is_listed = False
            db.add(prop)

        append_audit(
            db,
            agreement_id=agreement.id,
            action="LEASE_ACTIVATED",
            detail="Security deposit and 1st month rent paid. Lease activated and schedule generated.",
        )
        job, created = enqueue_notification(
            db,
            job_type=NotificationType.PAYMENT_CONFIRMED,
            data={"agreement_id": agreement.id, "amount": amount, "receipt_number": receipt},
            idempotency_key=f"payment-confirmed-{agreement.id}",
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        log.info("webhook: session %s already recorded; treated as duplicate", session_id, extra=extra)
        return ReconcileResult(outcome="duplicate", agreement_id=agreement.id)

    dispatch_jobs([job.id] if created else [])
    log.info("payment confirmed and lease activated", extra=extra)
    return ReconcileResult(
        outcome="activated", agreement_id=agreement.id, payment_id=payment.id, receipt_number=receipt
    )


# -----------------------------------------------------------------------------
# Monthly rent -> one schedule entry paid
# -----------------------------------------------------------------------------
def record_rent_payment(db: Session, *, session: dict[str, Any], now: Optional[datetime] = None) -> ReconcileResult:
    now = now or _utcnow()
    session_id = str(session.get("id") or "").strip()
    agreement_id = _metadata_agreement_id(session)
    metadata = _metadata(session)

    if not session_id or agreement_id is None:
        log.warning("rent checkout event missing session id or agreement metadata; acknowledged")
        return ReconcileResult(outcome="invalid", agreement_id=agreement_id, detail="missing session id or agreementId")

    try:
        seq = int(metadata.get("scheduleSeq", metadata.get("schedule_seq")))
    except (TypeError, ValueError):
        log.warning("rent checkout event without scheduleSeq; acknowledged", extra={"agreement_id": agreement_id})
        return ReconcileResult(outcome="invalid", agreement_id=agreement_id, detail="missing scheduleSeq")

    extra = {"agreement_id": agreement_id}
    agreement = db.scalar(select(Agreement).where(Agreement.id == agreement_id))
    if agreement is None:
        log.warning("webhook: agreement not found", extra=extra)
        return ReconcileResult(outcome="agreement_not_found", agreement_id=agreement_id)

    prior = _existing_payment(db, session_id)
    if prior is not None:
        return ReconcileResult(
            outcome="duplicate", agreement_id=agreement.id, payment_id=prior.id, receipt_number=prior.receipt_number
        )

    if agreement.status not in ("active", "expired"):
        log.warning("webhook: rent paid on %s agreement; no change", agreement.status, extra=extra)
        return ReconcileResult(outcome="not_active", agreement_id=agreement.id, detail=agreement.status)

    entry = db.scalar(
        select(RentScheduleEntry).where(RentScheduleEntry.agreement_id == agreement.id, RentScheduleEntry.seq == seq)
    )
    if entry is None:
        log.warning("webhook: schedule entry %s not found", seq, extra=extra)
        return ReconcileResult(outcome="invalid", agreement_id=agreement.id, detail=f"no schedule entry {seq}")

    if not can_transition(entry.status, "paid"):
        log.info("webhook: schedule entry %s already paid", seq, extra=extra)
        return ReconcileResult(outcome="duplicate", agreement_id=agreement.id, detail=f"entry {seq} already paid")

    payment_intent = session.get("payment_intent")
    amount = _session_amount(session, fallback=float(entry.amount))

    try:
        res = db.execute(
            update(RentScheduleEntry)
            .where(RentScheduleEntry.id == entry.id, RentScheduleEntry.status.in_(UNPAID_STATUSES))
            .values(status="paid", paid_date=now, paid_amount=amount, external_payment_ref=payment_intent)
            .execution_options(synchronize_session=False)
        )
        if int(res.rowcount or 0) != 1:
            db.rollback()
            log.info("webhook: schedule entry %s already paid", seq, extra=extra)
            return ReconcileResult(outcome="duplicate", agreement_id=agreement.id, detail=f"entry {seq} already paid")
        db.refresh(entry)

        receipt = next_receipt_number(db, year=now.year)
        payment = Payment(
            agreement_id=agreement.id,
            tenant_id=agreement.tenant_id,
            landlord_id=agreement.landlord_id,
            property_id=agreement.property_id,
            amount=amount,
            payment_type="rent",
            status="paid",
            due_date=entry.due_date,
            paid_at=now,
            late_fee_included=bool(entry.late_fee_applied),
            late_fee_amount=float(entry.late_fee_amount or 0.0),
            external_session_id=session_id,
            external_payment_intent=payment_intent,
            receipt_number=receipt,
            created_at=now,
        )
        db.add(payment)

        append_audit(
            db,
            agreement_id=agreement.id,
            action="RENT_PAID",
            actor_user_id=agreement.tenant_id,
            detail=f"Rent for {entry.due_date.isoformat()} paid: {amount:.2f} (receipt {receipt})",
        )
        job, created = enqueue_notification(
            db,
            job_type=NotificationType.RENT_PAYMENT_RECEIVED,
            data={
                "agreement_id": agreement.id,
                "amount": amount,
                "due_date": entry.due_date.isoformat(),
                "receipt_number": receipt,
            },
            idempotency_key=f"rent-paid-{agreement.id}-{seq}",
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        return ReconcileResult(outcome="duplicate", agreement_id=agreement.id)

    dispatch_jobs([job.id] if created else [])
    log.info("rent payment recorded for entry %s", seq, extra=extra)
    return ReconcileResult(
        outcome="rent_recorded", agreement_id=agreement.id, payment_id=payment.id, receipt_number=receipt
    )


# -----------------------------------------------------------------------------
# Checkout precheck + reads
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class CheckoutQuote:
    agreement_id: int
    rent_amount: float
    deposit_amount: float
    amount: float
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def unit_amount(self) -> int:
        """Minor units, as the processor expects them."""
        return int(round(self.amount * 100))

    def as_dict(self) -> dict:
        return {
            "agreement_id": self.agreement_id,
            "rent_amount": self.rent_amount,
            "deposit_amount": self.deposit_amount,
            "amount": self.amount,
            "unit_amount": self.unit_amount,
            "currency": self.currency,
            "metadata": dict(self.metadata),
        }


def quote_initial_checkout(db: Session, *, agreement_id: int, tenant: Principal) -> CheckoutQuote:
    """What the tenant owes to activate: deposit plus the first month, and the metadata to echo back."""
    agreement = must_get_agreement(db, agreement_id=agreement_id)
    if int(agreement.tenant_id) != tenant.user_id:
        raise HTTPException(status_code=403, detail="Not authorized to pay for this agreement")
    if agreement.is_paid:
        raise HTTPException(status_code=400, detail="Initial payment has already been made")
    if agreement.status != "signed":
        raise HTTPException(status_code=400, detail="Agreement must be fully signed before payment")

    rent = float(agreement.rent_amount or 0.0)
    deposit = float(agreement.deposit_amount or 0.0)
    return CheckoutQuote(
        agreement_id=agreement.id,
        rent_amount=rent,
        deposit_amount=deposit,
        amount=round(rent + deposit, 2),
        currency=settings.currency,
        metadata={"agreementId": str(agreement.id)},
    )


def rent_schedule_view(db: Session, *, agreement_id: int, principal: Principal) -> dict[str, Any]:
    agreement = must_get_agreement_for_party(db, agreement_id=agreement_id, principal=principal)
    entries = list(
        db.scalars(
            select(RentScheduleEntry)
            .where(RentScheduleEntry.agreement_id == agreement.id)
            .order_by(RentScheduleEntry.seq.asc())
        ).all()
    )
    return {
        "agreement": {
            "id": agreement.id,
            "property_id": agreement.property_id,
            "tenant_id": agreement.tenant_id,
            "landlord_id": agreement.landlord_id,
            "status": agreement.status,
            "start_date": agreement.start_date,
            "end_date": agreement.end_date,
            "duration_months": agreement.duration_months,
            "rent_amount": agreement.rent_amount,
            "deposit_amount": agreement.deposit_amount,
            "late_fee_amount": agreement.late_fee_amount,
            "late_fee_grace_period_days": agreement.late_fee_grace_period_days,
            "viewer_role": party_role(agreement, principal) or principal.role,
        },
        "schedule": entries,
        "summary": summarize_schedule(entries).as_dict(),
    }


def payment_history(
    db: Session,
    *,
    principal: Principal,
    page: int = 1,
    limit: int = 20,
    payment_type: Optional[str] = None,
    status: Optional[str] = None,
) -> dict[str, Any]:
    """
    Tenants see their own payments, landlords incoming ones, property managers
    those on properties they manage, admins everything.
    """
    q = select(Payment)
    if principal.role == "tenant":
        q = q.where(Payment.tenant_id == principal.user_id)
    elif principal.role == "landlord":
        q = q.where(Payment.landlord_id == principal.user_id)
    elif principal.role == "property_manager":
        managed = select(Property.id).where(Property.manager_id == principal.user_id)
        q = q.where(Payment.property_id.in_(managed))
    elif not principal.is_admin:
        raise HTTPException(status_code=403, detail="Not authorized")

    if payment_type:
        q = q.where(Payment.payment_type == payment_type)
    if status:
        q = q.where(Payment.status == status)

    page = max(1, int(page))
    limit = max(1, int(limit))

    total = int(db.scalar(select(func.count()).select_from(q.subquery())) or 0)
    rows = db.scalars(
        q.order_by(Payment.paid_at.desc(), Payment.id.desc()).offset((page - 1) * limit).limit(limit)
    ).all()

    return {
        "payments": list(rows),
        "pagination": {"total": total, "page": page, "pages": math.ceil(total / limit) if total else 0},
    }
