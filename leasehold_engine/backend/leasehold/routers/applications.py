# backend/leasehold/routers/applications.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_principal
from ..db import get_db
from ..schemas import ApplicationDecisionIn, ApplicationOut
from ..services.application_service import decide_application

router = APIRouter(prefix="/applications", tags=["applications"])


@router.put("/{application_id}/decision", response_model=ApplicationOut)
def decide(
    application_id: int,
    payload: ApplicationDecisionIn,
    db: Session = Depends(get_db),
    p=Depends(get_principal),
):
    return decide_application(db, application_id=application_id, landlord=p, status=payload.status)
