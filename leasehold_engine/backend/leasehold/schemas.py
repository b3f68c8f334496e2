# backend/leasehold/schemas.py
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# -------------------- Agreements --------------------

class AgreementCreate(BaseModel):
    tenant_id: int
    property_id: int
    start_date: date
    end_date: Optional[date] = None
    duration_months: Optional[int] = Field(default=None, ge=1, le=120)

    # override the property's terms; omitted values are copied from the property
    rent_amount: Optional[float] = Field(default=None, ge=0)
    deposit_amount: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _term_order(self):
        if self.end_date is not None and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class AgreementOut(BaseModel):
    id: int
    landlord_id: int
    tenant_id: int
    property_id: int
    application_id: Optional[int] = None
    status: str

    start_date: date
    end_date: date
    duration_months: int

    rent_amount: float
    deposit_amount: float
    late_fee_amount: float
    late_fee_grace_period_days: int

    landlord_signed: bool
    landlord_signed_at: Optional[datetime] = None
    tenant_signed: bool
    tenant_signed_at: Optional[datetime] = None

    is_paid: bool
    activated_at: Optional[datetime] = None

    renewal_status: Optional[str] = None
    renewal_new_end_date: Optional[date] = None
    renewal_new_rent_amount: Optional[float] = None
    renewal_notes: Optional[str] = None

    terminated_at: Optional[datetime] = None
    termination_reason: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class SignResultOut(BaseModel):
    message: str
    status: str
    landlord_signed: bool
    tenant_signed: bool


class RenewalProposalIn(BaseModel):
    new_end_date: date
    new_rent_amount: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = Field(default=None, max_length=2000)


class RenewalResponseIn(BaseModel):
    accept: bool


class TerminateIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class AuditEntryOut(BaseModel):
    action: str
    actor: Optional[int] = None
    timestamp: datetime
    detail: str


# -------------------- Applications --------------------

class ApplicationDecisionIn(BaseModel):
    status: Literal["accepted", "rejected"]


class ApplicationOut(BaseModel):
    id: int
    property_id: int
    tenant_id: int
    landlord_id: int
    status: str
    agreement_id: Optional[int] = None
    decided_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


# -------------------- Payments --------------------

class CheckoutQuoteIn(BaseModel):
    agreement_id: int


class CheckoutQuoteOut(BaseModel):
    agreement_id: int
    rent_amount: float
    deposit_amount: float
    amount: float
    unit_amount: int
    currency: str
    metadata: dict[str, str]


class RentScheduleEntryOut(BaseModel):
    seq: int
    due_date: date
    amount: float
    status: str
    paid_date: Optional[datetime] = None
    paid_amount: Optional[float] = None
    late_fee_applied: bool
    late_fee_amount: float
    model_config = ConfigDict(from_attributes=True)


class ScheduleSummaryOut(BaseModel):
    total: int
    paid: int
    pending: int
    overdue: int
    total_late_fees: float
    outstanding_amount: float


class RentScheduleOut(BaseModel):
    agreement: dict[str, Any]
    schedule: list[RentScheduleEntryOut]
    summary: ScheduleSummaryOut


class PaymentOut(BaseModel):
    id: int
    agreement_id: int
    tenant_id: int
    landlord_id: int
    property_id: int
    amount: float
    payment_type: str
    status: str
    due_date: Optional[date] = None
    paid_at: Optional[datetime] = None
    late_fee_included: bool
    late_fee_amount: float
    receipt_number: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class PaginationOut(BaseModel):
    total: int
    page: int
    pages: int


class PaymentHistoryOut(BaseModel):
    payments: list[PaymentOut]
    pagination: PaginationOut


# -------------------- Notifications --------------------

class NotificationJobOut(BaseModel):
    id: int
    idempotency_key: str
    job_type: str
    status: str
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    created_at: datetime
    finished_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)
