# backend/leasehold/domain/audit.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import AgreementAuditEntry


def append_audit(
    db: Session,
    *,
    agreement_id: int,
    action: str,
    actor_user_id: Optional[int] = None,
    detail: str = "",
    source_address: Optional[str] = None,
    commit: bool = False,
) -> AgreementAuditEntry:
    """
    Appends one entry to an agreement's audit log.

    - Does NOT commit by default, so the entry lands in the same transaction as
      the mutation it describes.
    - There is no update/delete counterpart: the log is append-only and its
      order is the primary key order.
    """
    row = AgreementAuditEntry(
        agreement_id=int(agreement_id),
        action=str(action),
        actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
        source_address=source_address,
        detail=detail or "",
        created_at=datetime.utcnow(),
    )
    db.add(row)
    db.flush()
    if commit:
        db.commit()
    return row


def list_audit(db: Session, *, agreement_id: int) -> list[AgreementAuditEntry]:
    return list(
        db.scalars(
            select(AgreementAuditEntry)
            .where(AgreementAuditEntry.agreement_id == int(agreement_id))
            .order_by(AgreementAuditEntry.id.asc())
        ).all()
    )


def audit_entry_dict(row: AgreementAuditEntry) -> dict[str, Any]:
    return {
        "action": row.action,
        "actor": row.actor_user_id,
        "timestamp": row.created_at,
        "detail": row.detail,
    }
