# backend/leasehold/services/agreement_service.py
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.orm import Session

from ..auth import Principal
from ..config import settings
from ..domain.audit import append_audit
from ..domain.rent_schedule import add_months, months_between
from ..models import Agreement, Application, Property
from .lease_rules import ensure_no_agreement_overlap
from .notifications import NotificationType, dispatch_jobs, enqueue_notification
from .ownership import must_get_agreement, must_get_agreement_for_party, must_get_property, must_get_user, party_role

log = logging.getLogger("leasehold.agreements")

TERMINAL_STATUSES = ("terminated",)
SIGNABLE_STATUSES = ("draft", "sent")
RENEWABLE_STATUSES = ("active", "expired")


def _utcnow() -> datetime:
    return datetime.utcnow()


def _grace_days(prop: Property) -> int:
    # 0 is a real setting (fee the day after the entry goes overdue); only a missing value falls back
    if prop.late_fee_grace_period_days is None:
        return int(settings.default_grace_period_days)
    return int(prop.late_fee_grace_period_days)


def _resolve_term(
    *, start_date: date, end_date: Optional[date], duration_months: Optional[int], fallback_months: int
) -> tuple[date, int]:
    if end_date is not None:
        if end_date <= start_date:
            raise HTTPException(status_code=400, detail="end_date must be after start_date")
        n = int(duration_months) if duration_months else months_between(start_date, end_date)
        return end_date, n

    n = int(duration_months or fallback_months)
    if n < 1:
        raise HTTPException(status_code=400, detail="duration_months must be >= 1")
    return add_months(start_date, n), n


def _build_agreement(
    db: Session,
    *,
    prop: Property,
    landlord_id: int,
    tenant_id: int,
    start_date: date,
    end_date: Optional[date],
    duration_months: Optional[int],
    rent_amount: Optional[float],
    deposit_amount: Optional[float],
    application_id: Optional[int],
) -> Agreement:
    """
    Financials are copied from the property here and never read from it again:
    later property edits do not reach existing agreements.
    """
    fallback = int(prop.default_duration_months or settings.default_lease_duration_months)
    end, n = _resolve_term(
        start_date=start_date, end_date=end_date, duration_months=duration_months, fallback_months=fallback
    )

    try:
        ensure_no_agreement_overlap(db, property_id=prop.id, start_date=start_date, end_date=end)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    rent = float(rent_amount if rent_amount is not None else prop.monthly_rent)
    deposit = float(deposit_amount if deposit_amount is not None else prop.security_deposit)
    if rent < 0 or deposit < 0:
        raise HTTPException(status_code=400, detail="rent_amount and deposit_amount cannot be negative")

    now = _utcnow()
    row = Agreement(
        landlord_id=int(landlord_id),
        tenant_id=int(tenant_id),
        property_id=int(prop.id),
        application_id=application_id,
        status="draft",
        start_date=start_date,
        end_date=end,
        duration_months=n,
        rent_amount=rent,
        deposit_amount=deposit,
        late_fee_amount=float(prop.late_fee_amount or 0.0),
        late_fee_grace_period_days=_grace_days(prop),
        renewal_notify_days_before=int(settings.default_renewal_notify_days),
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.flush()
    return row


# -----------------------------------------------------------------------------
# Creation
# -----------------------------------------------------------------------------
def create_agreement(
    db: Session,
    *,
    landlord: Principal,
    tenant_id: int,
    property_id: int,
    start_date: date,
    end_date: Optional[date] = None,
    duration_months: Optional[int] = None,
    rent_amount: Optional[float] = None,
    deposit_amount: Optional[float] = None,
    source_address: Optional[str] = None,
) -> Agreement:
    prop = must_get_property(db, property_id=property_id)
    if int(prop.landlord_id) != landlord.user_id:
        raise HTTPException(status_code=403, detail="Not authorized to lease this property")
    tenant = must_get_user(db, user_id=tenant_id)
    if int(tenant.id) == landlord.user_id:
        raise HTTPException(status_code=400, detail="landlord and tenant must be different users")

    row = _build_agreement(
        db,
        prop=prop,
        landlord_id=landlord.user_id,
        tenant_id=tenant.id,
        start_date=start_date,
        end_date=end_date,
        duration_months=duration_months,
        rent_amount=rent_amount,
        deposit_amount=deposit_amount,
        application_id=None,
    )
    append_audit(
        db,
        agreement_id=row.id,
        action="CREATED",
        actor_user_id=landlord.user_id,
        source_address=source_address,
        detail="Initial Draft Created",
    )
    job, created = enqueue_notification(
        db,
        job_type=NotificationType.AGREEMENT_CREATED,
        data={"agreement_id": row.id},
        idempotency_key=f"agreement-created-{row.id}",
    )
    db.commit()
    db.refresh(row)

    dispatch_jobs([job.id] if created else [])
    log.info("agreement created", extra={"agreement_id": row.id, "user_id": landlord.user_id})
    return row


def create_from_application(db: Session, *, application: Application, actor: Principal) -> Agreement:
    """
    Flush-only: the caller commits together with the application decision.
    Term starts today and runs for the property's default duration.
    """
    prop = must_get_property(db, property_id=application.property_id)
    row = _build_agreement(
        db,
        prop=prop,
        landlord_id=prop.landlord_id,
        tenant_id=application.tenant_id,
        start_date=_utcnow().date(),
        end_date=None,
        duration_months=None,
        rent_amount=None,
        deposit_amount=None,
        application_id=application.id,
    )
    append_audit(
        db,
        agreement_id=row.id,
        action="CREATED_FROM_APPLICATION",
        actor_user_id=actor.user_id,
        detail=f"Auto-created from application {application.id}",
    )
    return row


# -----------------------------------------------------------------------------
# Signing
# -----------------------------------------------------------------------------
def sign_agreement(
    db: Session, *, agreement_id: int, principal: Principal, source_address: Optional[str] = None
) -> Agreement:
    """
    Records one party's signature.

    The "not yet signed" guard and the write are a single conditional UPDATE,
    so a double-submit by the same party loses cleanly (409) and the first
    signature timestamp survives. The status flip is computed in SQL from
    both signature columns, so two parties signing at the same moment still
    converge on "signed".

    Full signature never activates; activation waits for the payment webhook.
    """
    agreement = must_get_agreement(db, agreement_id=agreement_id)
    role = party_role(agreement, principal)
    if role is None:
        raise HTTPException(status_code=403, detail="Not authorized to sign this agreement")

    if role == "landlord":
        signed_col = Agreement.landlord_signed
        values = {"landlord_signed": True, "landlord_signed_at": _utcnow(), "landlord_signed_address": source_address}
    else:
        signed_col = Agreement.tenant_signed
        values = {"tenant_signed": True, "tenant_signed_at": _utcnow(), "tenant_signed_address": source_address}

    res = db.execute(
        update(Agreement)
        .where(
            Agreement.id == agreement.id,
            Agreement.status.in_(SIGNABLE_STATUSES),
            signed_col.is_(False),
        )
        .values(**values, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        db.rollback()
        db.refresh(agreement)
        if getattr(agreement, f"{role}_signed"):
            raise HTTPException(status_code=409, detail="You have already signed this agreement")
        raise HTTPException(status_code=400, detail=f"Agreement cannot be signed in status '{agreement.status}'")

    db.execute(
        update(Agreement)
        .where(Agreement.id == agreement.id, Agreement.status.in_(SIGNABLE_STATUSES))
        .values(
            status=case(
                (and_(Agreement.landlord_signed.is_(True), Agreement.tenant_signed.is_(True)), "signed"),
                else_="sent",
            )
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(agreement)

    append_audit(
        db,
        agreement_id=agreement.id,
        action="SIGNED_LANDLORD" if role == "landlord" else "SIGNED_TENANT",
        actor_user_id=principal.user_id,
        source_address=source_address,
        detail=f"Signed by {principal.name or principal.email} at {values[f'{role}_signed_at'].isoformat()}",
    )

    job_ids: list[int] = []
    if agreement.status == "signed":
        append_audit(
            db,
            agreement_id=agreement.id,
            action="FULLY_SIGNED",
            actor_user_id=principal.user_id,
            source_address=source_address,
            detail="Both parties signed. Awaiting security deposit payment to activate.",
        )
        counter_party = agreement.tenant_id if role == "landlord" else agreement.landlord_id
        job, created = enqueue_notification(
            db,
            job_type=NotificationType.AGREEMENT_SIGNED,
            data={"agreement_id": agreement.id, "recipient_id": counter_party, "signed_by_id": principal.user_id},
            idempotency_key=f"agreement-signed-{agreement.id}",
        )
        if created:
            job_ids.append(job.id)
    else:
        append_audit(
            db,
            agreement_id=agreement.id,
            action="AWAITING_COUNTERSIGNATURE",
            actor_user_id=principal.user_id,
            source_address=source_address,
            detail=f"Status set to {agreement.status}; waiting for the other party to sign.",
        )

    db.commit()
    dispatch_jobs(job_ids)
    log.info("agreement signed by %s", role, extra={"agreement_id": agreement.id, "user_id": principal.user_id})
    return agreement


# -----------------------------------------------------------------------------
# Termination
# -----------------------------------------------------------------------------
def terminate_agreement(
    db: Session,
    *,
    agreement_id: int,
    actor: Principal,
    reason: Optional[str] = None,
    action: str = "TERMINATED_BY_ADMIN",
    source_address: Optional[str] = None,
) -> Agreement:
    agreement = must_get_agreement(db, agreement_id=agreement_id)
    was_active = agreement.status == "active"
    had_pending_renewal = agreement.renewal_status == "pending"
    now = _utcnow()

    res = db.execute(
        update(Agreement)
        .where(Agreement.id == agreement.id, Agreement.status.notin_(TERMINAL_STATUSES))
        .values(
            status="terminated",
            terminated_at=now,
            termination_reason=reason or "Terminated by administrator",
            renewal_status=case(
                (Agreement.renewal_status == "pending", "withdrawn"),
                else_=Agreement.renewal_status,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        db.rollback()
        raise HTTPException(status_code=409, detail="Agreement is already terminated")

    if was_active:
        prop = db.scalar(select(Property).where(Property.id == agreement.property_id))
        if prop is not None:
            prop.status = "available"
            db.add(prop)

    append_audit(
        db,
        agreement_id=agreement.id,
        action=action,
        actor_user_id=actor.user_id,
        source_address=source_address,
        detail=reason or "Terminated by administrator",
    )
    if had_pending_renewal:
        append_audit(
            db,
            agreement_id=agreement.id,
            action="RENEWAL_WITHDRAWN",
            actor_user_id=actor.user_id,
            source_address=source_address,
            detail="Pending renewal proposal withdrawn on termination",
        )
    job, created = enqueue_notification(
        db,
        job_type=NotificationType.AGREEMENT_TERMINATED,
        data={"agreement_id": agreement.id},
        idempotency_key=f"agreement-terminated-{agreement.id}",
    )
    db.commit()
    db.refresh(agreement)

    dispatch_jobs([job.id] if created else [])
    log.info("agreement terminated", extra={"agreement_id": agreement.id, "user_id": actor.user_id})
    return agreement


def remove_tenant_from_property(
    db: Session, *, property_id: int, actor: Principal, reason: Optional[str] = None, source_address: Optional[str] = None
) -> Agreement:
    must_get_property(db, property_id=property_id)
    agreement = db.scalar(
        select(Agreement)
        .where(Agreement.property_id == int(property_id), Agreement.status == "active")
        .order_by(Agreement.id.desc())
    )
    if agreement is None:
        raise HTTPException(status_code=404, detail="No active tenant found for this property")
    return terminate_agreement(
        db,
        agreement_id=agreement.id,
        actor=actor,
        reason=reason,
        action="TERMINATED_BY_ADMIN",
        source_address=source_address,
    )


# -----------------------------------------------------------------------------
# Renewal
# -----------------------------------------------------------------------------
def propose_renewal(
    db: Session,
    *,
    agreement_id: int,
    landlord: Principal,
    new_end_date: date,
    new_rent_amount: Optional[float] = None,
    notes: Optional[str] = None,
    source_address: Optional[str] = None,
) -> Agreement:
    """
    One proposal at a time: a second proposal while one is pending is a
    conflict, never a silent overwrite. Answered proposals may be replaced.
    """
    agreement = must_get_agreement(db, agreement_id=agreement_id)
    if int(agreement.landlord_id) != landlord.user_id:
        raise HTTPException(status_code=403, detail="Only the landlord can propose renewal")
    if agreement.status not in RENEWABLE_STATUSES:
        raise HTTPException(status_code=400, detail="Only active or expired agreements can be renewed")
    if new_end_date <= agreement.end_date:
        raise HTTPException(status_code=400, detail="new_end_date must be after the current end date")

    rent = float(new_rent_amount if new_rent_amount is not None else agreement.rent_amount)
    if rent < 0:
        raise HTTPException(status_code=400, detail="new_rent_amount cannot be negative")

    now = _utcnow()
    res = db.execute(
        update(Agreement)
        .where(
            Agreement.id == agreement.id,
            Agreement.status.in_(RENEWABLE_STATUSES),
            or_(Agreement.renewal_status.is_(None), Agreement.renewal_status != "pending"),
        )
        .values(
            renewal_proposed_by_id=landlord.user_id,
            renewal_new_end_date=new_end_date,
            renewal_new_rent_amount=rent,
            renewal_notes=notes or "",
            renewal_status="pending",
            renewal_proposed_at=now,
            renewal_responded_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        db.rollback()
        raise HTTPException(status_code=409, detail="A renewal proposal is already pending for this agreement")
    db.refresh(agreement)

    append_audit(
        db,
        agreement_id=agreement.id,
        action="RENEWAL_PROPOSED",
        actor_user_id=landlord.user_id,
        source_address=source_address,
        detail=f"Renewal proposed until {new_end_date.isoformat()}. New rent: {rent:.2f}",
    )
    job, created = enqueue_notification(
        db,
        job_type=NotificationType.RENEWAL_PROPOSED,
        data={"agreement_id": agreement.id},
        idempotency_key=f"renewal-proposed-{agreement.id}-{now.isoformat()}",
    )
    db.commit()
    dispatch_jobs([job.id] if created else [])
    return agreement


def respond_to_renewal(
    db: Session, *, agreement_id: int, tenant: Principal, accept: bool, source_address: Optional[str] = None
) -> Agreement:
    agreement = must_get_agreement(db, agreement_id=agreement_id)
    if int(agreement.tenant_id) != tenant.user_id:
        raise HTTPException(status_code=403, detail="Only the tenant can respond to renewal")
    if agreement.status not in RENEWABLE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Cannot respond to renewal on a {agreement.status} agreement")
    if agreement.renewal_status != "pending":
        raise HTTPException(status_code=400, detail="No pending renewal proposal found")

    now = _utcnow()
    if accept:
        new_end = agreement.renewal_new_end_date or agreement.end_date
        new_rent = (
            agreement.renewal_new_rent_amount
            if agreement.renewal_new_rent_amount is not None
            else agreement.rent_amount
        )
        # an expired agreement no longer holds the property, which may have been let again
        try:
            ensure_no_agreement_overlap(
                db,
                property_id=agreement.property_id,
                start_date=agreement.start_date,
                end_date=new_end,
                ignore_agreement_id=agreement.id,
            )
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        values = {
            "end_date": new_end,
            "rent_amount": float(new_rent),
            "duration_months": months_between(agreement.start_date, new_end),
            "status": "active",
            "renewal_status": "accepted",
        }
    else:
        values = {"renewal_status": "rejected"}

    res = db.execute(
        update(Agreement)
        .where(
            Agreement.id == agreement.id,
            Agreement.renewal_status == "pending",
            Agreement.status.in_(RENEWABLE_STATUSES),
        )
        .values(**values, renewal_responded_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        db.rollback()
        raise HTTPException(status_code=409, detail="Renewal proposal was already answered or withdrawn")
    db.refresh(agreement)

    if accept:
        append_audit(
            db,
            agreement_id=agreement.id,
            action="RENEWAL_ACCEPTED",
            actor_user_id=tenant.user_id,
            source_address=source_address,
            detail=f"Tenant accepted renewal until {agreement.end_date.isoformat()}",
        )
    else:
        append_audit(
            db,
            agreement_id=agreement.id,
            action="RENEWAL_REJECTED",
            actor_user_id=tenant.user_id,
            source_address=source_address,
            detail="Tenant declined renewal proposal",
        )

    job, created = enqueue_notification(
        db,
        job_type=NotificationType.RENEWAL_RESPONSE,
        data={"agreement_id": agreement.id, "accepted": bool(accept)},
        idempotency_key=f"renewal-response-{agreement.id}-{now.isoformat()}",
    )
    db.commit()
    dispatch_jobs([job.id] if created else [])
    return agreement


# -----------------------------------------------------------------------------
# Reads
# -----------------------------------------------------------------------------
def list_agreements_for_user(db: Session, *, principal: Principal, status: Optional[str] = None) -> list[Agreement]:
    q = select(Agreement)
    if not principal.is_admin:
        q = q.where(or_(Agreement.landlord_id == principal.user_id, Agreement.tenant_id == principal.user_id))
    if status:
        q = q.where(Agreement.status == status)
    return list(db.scalars(q.order_by(Agreement.created_at.desc(), Agreement.id.desc())).all())


def get_agreement_for_party(db: Session, *, agreement_id: int, principal: Principal) -> Agreement:
    return must_get_agreement_for_party(db, agreement_id=agreement_id, principal=principal, allow_admin=True)


def expiry_warning_date(agreement: Agreement) -> date:
    """The day the expiry warning goes out."""
    return agreement.end_date - timedelta(days=int(agreement.renewal_notify_days_before or settings.default_renewal_notify_days))
