# backend/tests/lease_factories.py
from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Optional

from leasehold.auth import Principal, principal_from_user
from leasehold.clients.notify_gateway import NotificationDeliveryError, SendResult
from leasehold.models import Agreement, AppUser, Property
from leasehold.services.agreement_service import create_agreement, sign_agreement
from leasehold.services.payment_reconciliation import ReconcileResult, reconcile_checkout_completed
from leasehold.services.webhook_signature import signature_header

WEBHOOK_SECRET = "whsec_test"


def mk_user(
    db,
    *,
    email: str,
    name: str = "",
    role: str = "tenant",
    phone_number: Optional[str] = None,
    sms_opt_in: bool = False,
    push_token: Optional[str] = None,
) -> AppUser:
    u = AppUser(
        email=email,
        name=name or email.split("@")[0],
        role=role,
        phone_number=phone_number,
        sms_opt_in=sms_opt_in,
        push_token=push_token,
    )
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


def mk_property(
    db,
    *,
    landlord_id: int,
    title: str = "Flat 4B",
    monthly_rent: float = 50000.0,
    security_deposit: float = 50000.0,
    late_fee_amount: float = 2000.0,
    grace_days: Optional[int] = 5,
    duration_months: int = 12,
) -> Property:
    p = Property(
        landlord_id=landlord_id,
        title=title,
        address="12 Canal Road",
        status="available",
        is_listed=True,
        monthly_rent=monthly_rent,
        security_deposit=security_deposit,
        late_fee_amount=late_fee_amount,
        late_fee_grace_period_days=grace_days,
        default_duration_months=duration_months,
    )
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


def principal(user: AppUser) -> Principal:
    return principal_from_user(user)


def mk_parties(db, *, tenant_kwargs: Optional[dict] = None, **property_kwargs) -> tuple[AppUser, AppUser, Property]:
    landlord = mk_user(db, email="landlord@test.local", name="Lena Landlord", role="landlord")
    tenant = mk_user(db, email="tenant@test.local", name="Tariq Tenant", role="tenant", **(tenant_kwargs or {}))
    prop = mk_property(db, landlord_id=landlord.id, **property_kwargs)
    return landlord, tenant, prop


def mk_draft_agreement(
    db,
    *,
    landlord: AppUser,
    tenant: AppUser,
    prop: Property,
    start_date: date = date(2026, 1, 15),
    duration_months: int = 12,
) -> Agreement:
    return create_agreement(
        db,
        landlord=principal(landlord),
        tenant_id=tenant.id,
        property_id=prop.id,
        start_date=start_date,
        duration_months=duration_months,
    )


def mk_signed_agreement(db, *, start_date: date = date(2026, 1, 15), duration_months: int = 12, **property_kwargs):
    """Returns (landlord, tenant, property, agreement) with both signatures in place."""
    landlord, tenant, prop = mk_parties(db, **property_kwargs)
    agreement = mk_draft_agreement(
        db, landlord=landlord, tenant=tenant, prop=prop, start_date=start_date, duration_months=duration_months
    )
    sign_agreement(db, agreement_id=agreement.id, principal=principal(landlord))
    sign_agreement(db, agreement_id=agreement.id, principal=principal(tenant))
    db.refresh(agreement)
    return landlord, tenant, prop, agreement


def checkout_session(
    agreement_id: Any,
    *,
    session_id: str = "cs_test_1",
    amount_total: Optional[int] = 10_000_000,
    payment_intent: str = "pi_test_1",
    purpose: Optional[str] = None,
    schedule_seq: Optional[int] = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"agreementId": str(agreement_id)}
    if purpose is not None:
        metadata["purpose"] = purpose
    if schedule_seq is not None:
        metadata["scheduleSeq"] = str(schedule_seq)
    return {
        "id": session_id,
        "object": "checkout.session",
        "amount_total": amount_total,
        "payment_intent": payment_intent,
        "metadata": metadata,
    }


def checkout_event(agreement_id: Any, **kwargs) -> dict[str, Any]:
    return {
        "id": "evt_test_1",
        "type": "checkout.session.completed",
        "data": {"object": checkout_session(agreement_id, **kwargs)},
    }


def signed_body(event: dict[str, Any], *, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
    raw = json.dumps(event).encode("utf-8")
    return raw, signature_header(secret, raw)


def activate(db, agreement: Agreement, *, now: datetime = datetime(2026, 1, 15, 12, 0), **kwargs) -> ReconcileResult:
    return reconcile_checkout_completed(db, session=checkout_session(agreement.id, **kwargs), now=now)


class RecordingGateway:
    """
    Stands in for the messaging gateway. `fail` maps a channel to how many of
    its sends should raise before it starts succeeding (-1 = always).
    """

    def __init__(self, fail: Optional[dict[str, int]] = None) -> None:
        self.fail = dict(fail or {})
        self.sent: list[dict[str, Any]] = []

    def send(self, *, channel: str, to: str, template: str, params: dict[str, Any]) -> SendResult:
        left = self.fail.get(channel, 0)
        if left:
            if left > 0:
                self.fail[channel] = left - 1
            raise NotificationDeliveryError(f"{channel} send failed: gateway unavailable")
        self.sent.append({"channel": channel, "to": to, "template": template, "params": params})
        return SendResult(channel=channel, to=to, template=template, provider_id=f"msg_{len(self.sent)}")

    def channels(self) -> list[str]:
        return [s["channel"] for s in self.sent]
