# backend/leasehold/routers/admin.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth import client_address, get_admin
from ..db import get_db
from ..schemas import TerminateIn
from ..services.agreement_service import remove_tenant_from_property

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/properties/{property_id}/remove-tenant", response_model=dict)
def remove_tenant(
    property_id: int,
    payload: TerminateIn,
    request: Request,
    db: Session = Depends(get_db),
    p=Depends(get_admin),
):
    row = remove_tenant_from_property(
        db, property_id=property_id, actor=p, reason=payload.reason, source_address=client_address(request)
    )
    return {
        "message": f"Tenant {row.tenant_id} has been removed from property {row.property_id}",
        "agreement_id": row.id,
        "status": row.status,
    }
