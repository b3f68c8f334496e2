# backend/leasehold/routers/agreements.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..auth import client_address, get_principal, require_admin
from ..db import get_db
from ..domain.audit import audit_entry_dict, list_audit
from ..schemas import (
    AgreementCreate,
    AgreementOut,
    AuditEntryOut,
    RenewalProposalIn,
    RenewalResponseIn,
    SignResultOut,
    TerminateIn,
)
from ..services.agreement_service import (
    create_agreement,
    get_agreement_for_party,
    list_agreements_for_user,
    propose_renewal,
    respond_to_renewal,
    sign_agreement,
    terminate_agreement,
)

router = APIRouter(prefix="/agreements", tags=["agreements"])


@router.post("", response_model=AgreementOut, status_code=201)
def create(payload: AgreementCreate, request: Request, db: Session = Depends(get_db), p=Depends(get_principal)):
    return create_agreement(
        db,
        landlord=p,
        tenant_id=payload.tenant_id,
        property_id=payload.property_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        duration_months=payload.duration_months,
        rent_amount=payload.rent_amount,
        deposit_amount=payload.deposit_amount,
        source_address=client_address(request),
    )


@router.get("", response_model=list[AgreementOut])
def list_mine(
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    p=Depends(get_principal),
):
    return list_agreements_for_user(db, principal=p, status=status)


@router.get("/{agreement_id}", response_model=AgreementOut)
def get_one(agreement_id: int, db: Session = Depends(get_db), p=Depends(get_principal)):
    return get_agreement_for_party(db, agreement_id=agreement_id, principal=p)


@router.get("/{agreement_id}/audit", response_model=list[AuditEntryOut])
def audit_trail(agreement_id: int, db: Session = Depends(get_db), p=Depends(get_principal)):
    row = get_agreement_for_party(db, agreement_id=agreement_id, principal=p)
    return [audit_entry_dict(e) for e in list_audit(db, agreement_id=row.id)]


@router.put("/{agreement_id}/sign", response_model=SignResultOut)
def sign(agreement_id: int, request: Request, db: Session = Depends(get_db), p=Depends(get_principal)):
    row = sign_agreement(db, agreement_id=agreement_id, principal=p, source_address=client_address(request))
    return {
        "message": "Agreement signed successfully",
        "status": row.status,
        "landlord_signed": row.landlord_signed,
        "tenant_signed": row.tenant_signed,
    }


@router.post("/{agreement_id}/renew", response_model=AgreementOut)
def renew(
    agreement_id: int,
    payload: RenewalProposalIn,
    request: Request,
    db: Session = Depends(get_db),
    p=Depends(get_principal),
):
    return propose_renewal(
        db,
        agreement_id=agreement_id,
        landlord=p,
        new_end_date=payload.new_end_date,
        new_rent_amount=payload.new_rent_amount,
        notes=payload.notes,
        source_address=client_address(request),
    )


@router.put("/{agreement_id}/renew/respond", response_model=AgreementOut)
def renew_respond(
    agreement_id: int,
    payload: RenewalResponseIn,
    request: Request,
    db: Session = Depends(get_db),
    p=Depends(get_principal),
):
    return respond_to_renewal(
        db, agreement_id=agreement_id, tenant=p, accept=payload.accept, source_address=client_address(request)
    )


@router.post("/{agreement_id}/terminate", response_model=AgreementOut)
def terminate(
    agreement_id: int,
    payload: TerminateIn,
    request: Request,
    db: Session = Depends(get_db),
    p=Depends(get_principal),
):
    require_admin(p)
    return terminate_agreement(
        db,
        agreement_id=agreement_id,
        actor=p,
        reason=payload.reason,
        source_address=client_address(request),
    )
