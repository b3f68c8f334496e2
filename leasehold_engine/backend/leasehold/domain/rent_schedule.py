# backend/leasehold/domain/rent_schedule.py
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

ENTRY_STATUSES = ("pending", "paid", "overdue", "late_fee_applied")

# allowed forward moves; "paid" is terminal
ENTRY_TRANSITIONS = {
    "pending": {"overdue", "paid"},
    "overdue": {"late_fee_applied", "paid"},
    "late_fee_applied": {"paid"},
    "paid": set(),
}

UNPAID_STATUSES = tuple(s for s in ENTRY_STATUSES if "paid" in ENTRY_TRANSITIONS[s])


def add_months(d: date, months: int) -> date:
    """
    Calendar-month arithmetic. The day is clamped to the end of the target
    month, so Jan 31 + 1 month is Feb 28 (or 29) and Jan 31 + 2 months is Mar 31.
    """
    idx = d.month - 1 + int(months)
    year = d.year + idx // 12
    month = idx % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def months_between(start: date, end: date) -> int:
    """Whole months covered by a term [start, end). Never less than 1."""
    if end < start:
        raise ValueError("lease end_date cannot be before start_date")
    n = (end.year - start.year) * 12 + (end.month - start.month)
    if add_months(start, n) > end:
        n -= 1
    return max(1, n)


def can_transition(current: str, new: str) -> bool:
    return new in ENTRY_TRANSITIONS.get(current, set())


@dataclass(frozen=True)
class ScheduleLine:
    seq: int
    due_date: date
    amount: float
    status: str
    paid_date: Optional[datetime] = None
    paid_amount: Optional[float] = None
    late_fee_applied: bool = False
    late_fee_amount: float = 0.0

    def as_dict(self) -> dict:
        return {
            "seq": self.seq,
            "due_date": self.due_date,
            "amount": self.amount,
            "status": self.status,
            "paid_date": self.paid_date,
            "paid_amount": self.paid_amount,
            "late_fee_applied": self.late_fee_applied,
            "late_fee_amount": self.late_fee_amount,
        }


def generate_rent_schedule(
    *,
    start_date: date,
    duration_months: int,
    rent_amount: float,
    paid_on: datetime,
) -> list[ScheduleLine]:
    """
    Expands a lease's financial terms into its monthly obligations.

    Entry 0 is the month bundled into the initial checkout and is born paid;
    every later entry starts pending. Pure: the same terms always produce the
    same schedule.
    """
    n = int(duration_months)
    if n < 1:
        raise ValueError("duration_months must be >= 1")
    rent = float(rent_amount)
    if rent < 0:
        raise ValueError("rent_amount cannot be negative")

    lines: list[ScheduleLine] = []
    for i in range(n):
        due = add_months(start_date, i)
        if i == 0:
            lines.append(
                ScheduleLine(seq=0, due_date=due, amount=rent, status="paid", paid_date=paid_on, paid_amount=rent)
            )
        else:
            lines.append(ScheduleLine(seq=i, due_date=due, amount=rent, status="pending"))
    return lines


@dataclass(frozen=True)
class ScheduleSummary:
    total: int
    paid: int
    pending: int
    overdue: int
    total_late_fees: float
    outstanding_amount: float

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "paid": self.paid,
            "pending": self.pending,
            "overdue": self.overdue,
            "total_late_fees": self.total_late_fees,
            "outstanding_amount": self.outstanding_amount,
        }


def summarize_schedule(entries: Iterable) -> ScheduleSummary:
    """Works on ORM entries or ScheduleLine objects alike."""
    total = paid = pending = overdue = 0
    fees = 0.0
    outstanding = 0.0
    for e in entries:
        total += 1
        st = str(getattr(e, "status", "") or "")
        if st == "paid":
            paid += 1
        elif st == "pending":
            pending += 1
        elif st in ("overdue", "late_fee_applied"):
            overdue += 1
        if st in UNPAID_STATUSES:
            outstanding += float(getattr(e, "amount", 0.0) or 0.0)
        fees += float(getattr(e, "late_fee_amount", 0.0) or 0.0)

    return ScheduleSummary(
        total=total,
        paid=paid,
        pending=pending,
        overdue=overdue,
        total_late_fees=round(fees, 2),
        outstanding_amount=round(outstanding, 2),
    )
