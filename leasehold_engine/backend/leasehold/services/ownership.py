# backend/leasehold/services/ownership.py
from __future__ import annotations

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..auth import Principal
from ..models import Agreement, AppUser, Application, Property


def must_get_user(db: Session, *, user_id: int) -> AppUser:
    row = db.scalar(select(AppUser).where(AppUser.id == int(user_id)))
    if not row:
        raise HTTPException(status_code=404, detail="user not found")
    return row


def must_get_property(db: Session, *, property_id: int) -> Property:
    row = db.scalar(select(Property).where(Property.id == int(property_id)))
    if not row:
        raise HTTPException(status_code=404, detail="property not found")
    return row


def must_get_application(db: Session, *, application_id: int) -> Application:
    row = db.scalar(select(Application).where(Application.id == int(application_id)))
    if not row:
        raise HTTPException(status_code=404, detail="application not found")
    return row


def must_get_agreement(db: Session, *, agreement_id: int) -> Agreement:
    row = db.scalar(select(Agreement).where(Agreement.id == int(agreement_id)))
    if not row:
        raise HTTPException(status_code=404, detail="Agreement not found")
    return row


def party_role(agreement: Agreement, principal: Principal) -> str | None:
    if int(agreement.landlord_id) == principal.user_id:
        return "landlord"
    if int(agreement.tenant_id) == principal.user_id:
        return "tenant"
    return None


def must_get_agreement_for_party(
    db: Session, *, agreement_id: int, principal: Principal, allow_admin: bool = True
) -> Agreement:
    row = must_get_agreement(db, agreement_id=agreement_id)
    if party_role(row, principal) is None and not (allow_admin and principal.is_admin):
        raise HTTPException(status_code=403, detail="Not authorized for this agreement")
    return row
