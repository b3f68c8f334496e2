# backend/leasehold/models.py
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


# -----------------------------
# Collaborator tables (owned by the surrounding marketplace)
# -----------------------------
class AppUser(Base):
    __tablename__ = "app_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(30), nullable=False, default="tenant")  # tenant|landlord|property_manager|admin

    phone_number: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    sms_opt_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_opt_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    push_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    landlord_id: Mapped[int] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=False, index=True)
    manager_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=True, index=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="available")  # available|occupied|maintenance
    is_listed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    monthly_rent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    security_deposit: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    late_fee_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    late_fee_grace_period_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    default_duration_months: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    tenant_id: Mapped[int] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=False, index=True)
    landlord_id: Mapped[int] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending|accepted|rejected|withdrawn
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    agreement_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("agreements.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


# -----------------------------
# Core: Agreements
# -----------------------------
class Agreement(Base):
    __tablename__ = "agreements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    landlord_id: Mapped[int] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=False, index=True)
    tenant_id: Mapped[int] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=False, index=True)
    property_id: Mapped[int] = mapped_column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    application_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="draft", index=True
    )  # draft|sent|signed|active|expired|terminated

    # term
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    duration_months: Mapped[int] = mapped_column(Integer, nullable=False, default=12)

    # financials: frozen copy of the property's terms at creation time
    rent_amount: Mapped[float] = mapped_column(Float, nullable=False)
    deposit_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    late_fee_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    late_fee_grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    renewal_notify_days_before: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    # signatures
    landlord_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    landlord_signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    landlord_signed_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tenant_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tenant_signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    tenant_signed_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # activation
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    payment_session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)

    # renewal proposal (one slot)
    renewal_proposed_by_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=True)
    renewal_new_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    renewal_new_rent_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    renewal_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    renewal_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # pending|accepted|rejected|withdrawn
    renewal_proposed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    renewal_responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    terminated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    termination_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    rent_schedule: Mapped[List["RentScheduleEntry"]] = relationship(
        back_populates="agreement",
        cascade="all, delete-orphan",
        order_by="RentScheduleEntry.seq",
    )
    audit_log: Mapped[List["AgreementAuditEntry"]] = relationship(
        back_populates="agreement",
        cascade="all, delete-orphan",
        order_by="AgreementAuditEntry.id",
    )


class RentScheduleEntry(Base):
    __tablename__ = "rent_schedule_entries"
    __table_args__ = (UniqueConstraint("agreement_id", "seq", name="uq_rent_schedule_agreement_seq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    agreement_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False, index=True
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending|paid|overdue|late_fee_applied

    paid_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    late_fee_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    late_fee_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    external_payment_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    agreement: Mapped["Agreement"] = relationship(back_populates="rent_schedule")


class AgreementAuditEntry(Base):
    __tablename__ = "agreement_audit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    agreement_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False, index=True
    )

    action: Mapped[str] = mapped_column(String(60), nullable=False, index=True)
    actor_user_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=True)
    source_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    detail: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    agreement: Mapped["Agreement"] = relationship(back_populates="audit_log")


# -----------------------------
# Payments
# -----------------------------
class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    agreement_id: Mapped[int] = mapped_column(Integer, ForeignKey("agreements.id"), nullable=False, index=True)
    tenant_id: Mapped[int] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=False, index=True)
    landlord_id: Mapped[int] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=False, index=True)
    property_id: Mapped[int] = mapped_column(Integer, ForeignKey("properties.id"), nullable=False, index=True)

    amount: Mapped[float] = mapped_column(Float, nullable=False)
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False)  # initial|rent|deposit|late_fee|maintenance|refund
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="paid")  # pending|paid|failed|refunded

    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    late_fee_included: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    late_fee_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # insert-if-absent key for webhook replay
    external_session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    external_payment_intent: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    receipt_number: Mapped[Optional[str]] = mapped_column(String(40), nullable=True, unique=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class ReceiptCounter(Base):
    __tablename__ = "receipt_counters"

    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# -----------------------------
# Notification queue + batch coordination
# -----------------------------
class NotificationJob(Base):
    __tablename__ = "notification_jobs"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_notification_jobs_idempotency_key"),
        Index("ix_notification_jobs_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    job_type: Mapped[str] = mapped_column(String(60), nullable=False, index=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")  # queued|running|done|failed
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # channels already delivered: retried jobs skip them
    delivered_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class BatchLock(Base):
    __tablename__ = "batch_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lock_key: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    owner: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
