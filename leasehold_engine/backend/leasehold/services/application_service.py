# backend/leasehold/services/application_service.py
from __future__ import annotations

import logging
from datetime import datetime

from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..auth import Principal
from ..models import Application
from .agreement_service import create_from_application
from .notifications import NotificationType, dispatch_jobs, enqueue_notification
from .ownership import must_get_application, must_get_property, must_get_user

log = logging.getLogger("leasehold.applications")

DECISIONS = ("accepted", "rejected")


def decide_application(db: Session, *, application_id: int, landlord: Principal, status: str) -> Application:
    """
    Landlord accepts or rejects a pending application. Acceptance creates the
    draft agreement in the same transaction as the decision.
    """
    st = (status or "").strip().lower()
    if st not in DECISIONS:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(DECISIONS)}")

    app_row = must_get_application(db, application_id=application_id)
    if int(app_row.landlord_id) != landlord.user_id:
        raise HTTPException(status_code=403, detail="Not authorized")

    res = db.execute(
        update(Application)
        .where(Application.id == app_row.id, Application.status == "pending")
        .values(status=st, decided_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        db.rollback()
        db.refresh(app_row)
        raise HTTPException(status_code=409, detail=f"Application is already {app_row.status}")
    db.refresh(app_row)

    prop = must_get_property(db, property_id=app_row.property_id)
    tenant = must_get_user(db, user_id=app_row.tenant_id)

    data = {
        "tenant_id": tenant.id,
        "tenant_name": tenant.name,
        "tenant_email": tenant.email,
        "property_id": prop.id,
        "property_title": prop.title,
    }

    if st == "accepted":
        agreement = create_from_application(db, application=app_row, actor=landlord)
        app_row.agreement_id = agreement.id
        db.add(app_row)
        data["agreement_id"] = agreement.id
        job_type = NotificationType.APPLICATION_ACCEPTED
    else:
        job_type = NotificationType.APPLICATION_REJECTED

    job, created = enqueue_notification(
        db,
        job_type=job_type,
        data=data,
        idempotency_key=f"application-{st}-{app_row.id}",
    )
    db.commit()
    db.refresh(app_row)

    dispatch_jobs([job.id] if created else [])
    log.info("application %s", st, extra={"user_id": landlord.user_id})
    return app_row
