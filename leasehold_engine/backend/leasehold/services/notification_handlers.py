# backend/leasehold/services/notification_handlers.py
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from sqlalchemy import select

from ..domain.audit import append_audit
from ..domain.rent_schedule import UNPAID_STATUSES
from ..models import Property, RentScheduleEntry
from .notifications import Delivery, Handler, NotificationType

log = logging.getLogger("leasehold.notifications")

# Handlers read the payload only for identifiers and event facts (the fee
# that was applied). Anything that can change after enqueue (status, contact
# details, opt-ins, the rent entry) is re-read here.


class EntityMissing(LookupError):
    pass


def _property_title(ctx: Delivery, property_id: Any) -> str:
    if property_id is None:
        return ""
    p = ctx.db.scalar(select(Property).where(Property.id == int(property_id)))
    return p.title if p else ""


def _require_agreement(ctx: Delivery):
    agreement = ctx.agreement()
    if agreement is None:
        # LookupError skips the retries and parks the job in the failed set
        raise EntityMissing(f"Agreement {ctx.data.get('agreement_id')} not found")
    return agreement


def _skip(ctx: Delivery, reason: str) -> None:
    log.info("notification skipped: %s", reason, extra={"job_id": ctx.job.id, "job_type": ctx.job.job_type})


def _live_entry(ctx: Delivery, agreement) -> Optional[RentScheduleEntry]:
    """The schedule entry the job is about, if it is still unpaid."""
    q = select(RentScheduleEntry).where(RentScheduleEntry.agreement_id == agreement.id)
    seq = ctx.data.get("seq")
    if seq is not None:
        q = q.where(RentScheduleEntry.seq == int(seq))
    else:
        try:
            q = q.where(RentScheduleEntry.due_date == date.fromisoformat(str(ctx.data.get("due_date"))))
        except ValueError:
            raise EntityMissing(f"job for agreement {agreement.id} names no schedule entry")

    entry = ctx.db.scalar(q)
    if entry is None:
        raise EntityMissing(f"schedule entry for agreement {agreement.id} not found")
    if entry.status not in UNPAID_STATUSES:
        _skip(ctx, f"rent for {entry.due_date.isoformat()} is {entry.status}")
        return None
    return entry


def handle_rent_due_reminder(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    if agreement.status != "active":
        _skip(ctx, f"agreement {agreement.id} is {agreement.status}")
        return

    entry = _live_entry(ctx, agreement)
    if entry is None:
        return

    tenant = ctx.user(agreement.tenant_id)
    if tenant is None:
        raise EntityMissing(f"tenant {agreement.tenant_id} not found")

    due_date = entry.due_date.isoformat()
    ctx.notify_user(
        tenant,
        template="rent_due_reminder",
        params={
            "tenant_name": tenant.name,
            "property_title": _property_title(ctx, agreement.property_id),
            "amount": float(entry.amount),
            "due_date": due_date,
        },
    )
    if ctx.once("audit:REMINDER_SENT"):
        append_audit(
            ctx.db,
            agreement_id=agreement.id,
            action="REMINDER_SENT",
            detail=f"Rent due reminder sent for {due_date}",
            commit=True,
        )


def handle_rent_overdue(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    if agreement.status != "active":
        _skip(ctx, f"agreement {agreement.id} is {agreement.status}")
        return

    entry = _live_entry(ctx, agreement)
    if entry is None:
        return

    tenant = ctx.user(agreement.tenant_id)
    if tenant is None:
        raise EntityMissing(f"tenant {agreement.tenant_id} not found")

    ctx.notify_user(
        tenant,
        template="rent_overdue",
        params={
            "tenant_name": tenant.name,
            "property_title": _property_title(ctx, agreement.property_id),
            "amount": float(entry.amount),
            "due_date": entry.due_date.isoformat(),
        },
    )
    if ctx.once("audit:OVERDUE_NOTICE_SENT"):
        append_audit(
            ctx.db,
            agreement_id=agreement.id,
            action="OVERDUE_NOTICE_SENT",
            detail=f"Overdue rent notice sent to tenant for {entry.due_date.isoformat()}.",
            commit=True,
        )


def handle_late_fee_applied(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    if agreement.status != "active":
        _skip(ctx, f"agreement {agreement.id} is {agreement.status}")
        return

    tenant = ctx.user(agreement.tenant_id)
    if tenant is None:
        raise EntityMissing(f"tenant {agreement.tenant_id} not found")

    ctx.notify_user(
        tenant,
        template="late_fee_applied",
        params={
            "tenant_name": tenant.name,
            "property_title": _property_title(ctx, agreement.property_id),
            "late_fee_amount": ctx.data.get("late_fee_amount"),
            "new_amount": ctx.data.get("new_amount"),
            "due_date": ctx.data.get("due_date"),
        },
    )


def handle_expiry_warning(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    if agreement.status != "active":
        _skip(ctx, f"agreement {agreement.id} is {agreement.status}")
        return

    title = _property_title(ctx, agreement.property_id)
    for role, user_id in (("tenant", agreement.tenant_id), ("landlord", agreement.landlord_id)):
        user = ctx.user(user_id)
        if user is None:
            continue
        ctx.notify_user(
            user,
            template="expiry_warning",
            params={
                "name": user.name,
                "property_title": title,
                "end_date": agreement.end_date.isoformat(),
                "role": role,
            },
        )


def handle_agreement_created(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    if agreement.status == "terminated":
        _skip(ctx, f"agreement {agreement.id} is terminated")
        return

    tenant = ctx.user(agreement.tenant_id)
    landlord = ctx.user(agreement.landlord_id)
    if tenant is None:
        raise EntityMissing(f"tenant {agreement.tenant_id} not found")

    ctx.notify_user(
        tenant,
        template="agreement_created",
        params={
            "tenant_name": tenant.name,
            "landlord_name": landlord.name if landlord else "",
            "property_title": _property_title(ctx, agreement.property_id),
            "start_date": agreement.start_date.isoformat(),
            "end_date": agreement.end_date.isoformat(),
            "rent_amount": agreement.rent_amount,
        },
    )


def handle_agreement_signed(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    recipient = ctx.user(ctx.data.get("recipient_id"))
    signer = ctx.user(ctx.data.get("signed_by_id"))
    if recipient is None:
        raise EntityMissing(f"user {ctx.data.get('recipient_id')} not found")

    ctx.notify_user(
        recipient,
        template="agreement_signed",
        params={
            "name": recipient.name,
            "signed_by": signer.name if signer else "",
            "property_title": _property_title(ctx, agreement.property_id),
            "status": agreement.status,
        },
    )


def handle_agreement_terminated(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    title = _property_title(ctx, agreement.property_id)
    for user_id in (agreement.tenant_id, agreement.landlord_id):
        user = ctx.user(user_id)
        if user is None:
            continue
        ctx.notify_user(
            user,
            template="agreement_terminated",
            params={"name": user.name, "property_title": title, "reason": agreement.termination_reason or ""},
        )


def handle_renewal_proposed(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    if agreement.renewal_status != "pending":
        _skip(ctx, f"renewal on agreement {agreement.id} is {agreement.renewal_status}")
        return

    tenant = ctx.user(agreement.tenant_id)
    if tenant is None:
        raise EntityMissing(f"tenant {agreement.tenant_id} not found")

    ctx.notify_user(
        tenant,
        template="renewal_proposed",
        params={
            "tenant_name": tenant.name,
            "property_title": _property_title(ctx, agreement.property_id),
            "new_end_date": agreement.renewal_new_end_date.isoformat() if agreement.renewal_new_end_date else None,
            "new_rent_amount": agreement.renewal_new_rent_amount,
            "notes": agreement.renewal_notes or "",
        },
    )


def handle_renewal_response(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    landlord = ctx.user(agreement.landlord_id)
    if landlord is None:
        raise EntityMissing(f"landlord {agreement.landlord_id} not found")

    ctx.notify_user(
        landlord,
        template="renewal_response",
        params={
            "landlord_name": landlord.name,
            "property_title": _property_title(ctx, agreement.property_id),
            "accepted": bool(ctx.data.get("accepted")),
            "end_date": agreement.end_date.isoformat(),
        },
    )


def handle_payment_confirmed(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    tenant = ctx.user(agreement.tenant_id)
    if tenant is None:
        raise EntityMissing(f"tenant {agreement.tenant_id} not found")

    ctx.notify_user(
        tenant,
        template="payment_confirmed",
        params={
            "tenant_name": tenant.name,
            "property_title": _property_title(ctx, agreement.property_id),
            "amount": ctx.data.get("amount"),
            "receipt_number": ctx.data.get("receipt_number"),
        },
    )


def handle_rent_payment_received(ctx: Delivery) -> None:
    agreement = _require_agreement(ctx)
    title = _property_title(ctx, agreement.property_id)
    for user_id in (agreement.tenant_id, agreement.landlord_id):
        user = ctx.user(user_id)
        if user is None:
            continue
        ctx.notify_user(
            user,
            template="rent_payment_received",
            params={
                "name": user.name,
                "property_title": title,
                "amount": ctx.data.get("amount"),
                "due_date": ctx.data.get("due_date"),
                "receipt_number": ctx.data.get("receipt_number"),
            },
        )


def _application_recipient(ctx: Delivery) -> tuple[Any, dict[str, Any]]:
    """
    Application jobs carry denormalized contact data for the case where the
    tenant account has since gone away; a live user row always wins.
    """
    user = ctx.user(ctx.data.get("tenant_id"))
    fallback = {
        "name": ctx.data.get("tenant_name") or "",
        "email": ctx.data.get("tenant_email"),
    }
    return user, fallback


def _handle_application(ctx: Delivery, template: str) -> None:
    user, fallback = _application_recipient(ctx)
    params = {
        "tenant_name": user.name if user else fallback["name"],
        "property_title": _property_title(ctx, ctx.data.get("property_id")) or ctx.data.get("property_title", ""),
    }
    if user is not None:
        ctx.notify_user(user, template=template, params=params)
        return
    ctx.send(
        channel="email",
        to=fallback["email"],
        template=template,
        params=params,
        dedupe=f"addr:{fallback['email']}",
    )


def handle_application_accepted(ctx: Delivery) -> None:
    _handle_application(ctx, "application_accepted")


def handle_application_rejected(ctx: Delivery) -> None:
    _handle_application(ctx, "application_rejected")


def handle_maintenance_update(ctx: Delivery) -> None:
    # maintenance updates go out by SMS only, and only to opted-in tenants
    user = ctx.user(ctx.data.get("tenant_id"))
    if user is None or not (user.sms_opt_in and user.phone_number):
        _skip(ctx, "tenant has not opted in to SMS")
        return
    ctx.send(
        channel="sms",
        to=user.phone_number,
        template="maintenance_update",
        params={"request_title": ctx.data.get("request_title", ""), "new_status": ctx.data.get("new_status", "")},
        dedupe=f"user{user.id}",
    )


HANDLERS: dict[str, Handler] = {
    NotificationType.RENT_DUE_REMINDER.value: handle_rent_due_reminder,
    NotificationType.RENT_OVERDUE.value: handle_rent_overdue,
    NotificationType.LATE_FEE_APPLIED.value: handle_late_fee_applied,
    NotificationType.AGREEMENT_EXPIRY_WARNING.value: handle_expiry_warning,
    NotificationType.AGREEMENT_CREATED.value: handle_agreement_created,
    NotificationType.AGREEMENT_SIGNED.value: handle_agreement_signed,
    NotificationType.AGREEMENT_TERMINATED.value: handle_agreement_terminated,
    NotificationType.RENEWAL_PROPOSED.value: handle_renewal_proposed,
    NotificationType.RENEWAL_RESPONSE.value: handle_renewal_response,
    NotificationType.PAYMENT_CONFIRMED.value: handle_payment_confirmed,
    NotificationType.RENT_PAYMENT_RECEIVED.value: handle_rent_payment_received,
    NotificationType.APPLICATION_ACCEPTED.value: handle_application_accepted,
    NotificationType.APPLICATION_REJECTED.value: handle_application_rejected,
    NotificationType.MAINTENANCE_UPDATE.value: handle_maintenance_update,
}
