# backend/leasehold/routers/notifications.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_admin
from ..db import get_db
from ..schemas import NotificationJobOut
from ..services.notifications import dispatch_jobs, list_failed_jobs, requeue_failed_job

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/failed", response_model=list[NotificationJobOut])
def failed(
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    _admin=Depends(get_admin),
):
    return list_failed_jobs(db, limit=limit)


@router.post("/{job_id}/requeue", response_model=NotificationJobOut)
def requeue(job_id: int, db: Session = Depends(get_db), _admin=Depends(get_admin)):
    job = requeue_failed_job(db, job_id=job_id)
    dispatch_jobs([job.id])
    return job
