from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from leasehold.models import Agreement

# agreements in these states still hold the property
HOLDING_STATUSES = ("draft", "sent", "signed", "active")


def _as_date(v: Any) -> Optional[date]:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v))
    except ValueError:
        return None


def _overlaps(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """Inclusive end dates on both sides."""
    return not (a_end < b_start or b_end < a_start)


def ensure_no_agreement_overlap(
    db: Session,
    *,
    property_id: int,
    start_date: Any,
    end_date: Any,
    ignore_agreement_id: Optional[int] = None,
) -> None:
    """
    Raise ValueError if the property already has a live agreement whose term
    overlaps [start_date, end_date].

    Terminated and expired agreements no longer hold the property.
    """
    s = _as_date(start_date)
    e = _as_date(end_date)

    if s is None or e is None:
        raise ValueError("agreement start_date and end_date are required and must be dates")
    if e < s:
        raise ValueError("agreement end_date cannot be before start_date")

    q = select(Agreement).where(
        Agreement.property_id == int(property_id),
        Agreement.status.in_(HOLDING_STATUSES),
    )
    if ignore_agreement_id is not None:
        q = q.where(Agreement.id != int(ignore_agreement_id))

    for r in db.scalars(q.order_by(Agreement.id.desc())).all():
        if _overlaps(s, e, r.start_date, r.end_date):
            raise ValueError(
                f"agreement dates overlap with existing agreement id={int(r.id)} "
                f"({r.start_date.isoformat()} -> {r.end_date.isoformat()}, status={r.status})"
            )
