# backend/leasehold/routers/payments.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..auth import get_principal
from ..db import get_db
from ..schemas import CheckoutQuoteIn, CheckoutQuoteOut, PaymentHistoryOut, RentScheduleOut
from ..services.payment_reconciliation import (
    handle_webhook,
    payment_history,
    quote_initial_checkout,
    rent_schedule_view,
)

router = APIRouter(prefix="/payments", tags=["payments"])

SIGNATURE_HEADER = "Stripe-Signature"


@router.post("/webhook")
async def webhook(request: Request, db: Session = Depends(get_db)):
    # signature is computed over the exact bytes sent; read them before anything parses the body
    raw_body = await request.body()
    result = await run_in_threadpool(
        handle_webhook,
        db,
        raw_body=raw_body,
        signature_header=request.headers.get(SIGNATURE_HEADER),
    )
    return {"received": True, "outcome": result.outcome}


@router.post("/checkout-quote", response_model=CheckoutQuoteOut)
def checkout_quote(payload: CheckoutQuoteIn, db: Session = Depends(get_db), p=Depends(get_principal)):
    return quote_initial_checkout(db, agreement_id=payload.agreement_id, tenant=p).as_dict()


@router.get("/schedule/{agreement_id}", response_model=RentScheduleOut)
def schedule(agreement_id: int, db: Session = Depends(get_db), p=Depends(get_principal)):
    return rent_schedule_view(db, agreement_id=agreement_id, principal=p)


@router.get("/history", response_model=PaymentHistoryOut)
def history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    type: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    p=Depends(get_principal),
):
    return payment_history(db, principal=p, page=page, limit=limit, payment_type=type, status=status)
