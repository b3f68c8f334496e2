# backend/leasehold/cli/seed_demo.py
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from leasehold.db import SessionLocal
from leasehold.models import AppUser, Property


@dataclass(frozen=True)
class SeedResult:
    admin_id: int
    landlord_id: int
    tenant_id: int
    property_id: int


def _get_or_create_user(db: Session, *, email: str, name: str, role: str) -> AppUser:
    row = db.query(AppUser).filter(AppUser.email == email).one_or_none()
    if row:
        return row
    row = AppUser(email=email, name=name, role=role)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def seed_demo(
    *,
    landlord_email: str = "landlord@demo.local",
    tenant_email: str = "tenant@demo.local",
    monthly_rent: float = 50000.0,
    late_fee_amount: float = 2000.0,
) -> SeedResult:
    """Idempotent: re-running reuses the users and the property."""
    db = SessionLocal()
    try:
        admin = _get_or_create_user(db, email="admin@demo.local", name="Admin", role="admin")
        landlord = _get_or_create_user(db, email=landlord_email, name="Demo Landlord", role="landlord")
        tenant = _get_or_create_user(db, email=tenant_email, name="Demo Tenant", role="tenant")

        prop = (
            db.query(Property)
            .filter(Property.landlord_id == landlord.id, Property.title == "Demo Flat")
            .one_or_none()
        )
        if prop is None:
            prop = Property(
                landlord_id=landlord.id,
                title="Demo Flat",
                address="1 Demo Street",
                status="available",
                is_listed=True,
                monthly_rent=float(monthly_rent),
                security_deposit=float(monthly_rent),
                late_fee_amount=float(late_fee_amount),
                late_fee_grace_period_days=5,
                default_duration_months=12,
            )
            db.add(prop)
            db.commit()
            db.refresh(prop)

        return SeedResult(admin_id=admin.id, landlord_id=landlord.id, tenant_id=tenant.id, property_id=prop.id)
    finally:
        db.close()
