# backend/leasehold/domain/late_fees.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from .rent_schedule import can_transition


@dataclass(frozen=True)
class EntryAssessment:
    days_past_due: int
    mark_overdue: bool
    apply_fee: bool


def days_past_due(due_date: date, today: date) -> int:
    return (today - due_date).days


def assess_entry(
    *,
    status: str,
    due_date: date,
    today: date,
    grace_period_days: int,
    late_fee_applied: bool,
) -> EntryAssessment:
    """
    Decides what the daily sweep does to one schedule entry.

    pending + past due                        -> overdue
    overdue (or just marked) + past grace     -> late fee, once
    paid / late_fee_applied                   -> nothing
    """
    dpd = days_past_due(due_date, today)

    mark_overdue = dpd > 0 and can_transition(status, "overdue")
    effective = "overdue" if mark_overdue else status

    apply_fee = (
        dpd > int(grace_period_days) and not late_fee_applied and can_transition(effective, "late_fee_applied")
    )

    return EntryAssessment(days_past_due=dpd, mark_overdue=mark_overdue, apply_fee=apply_fee)
