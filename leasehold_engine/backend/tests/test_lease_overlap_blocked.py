from __future__ import annotations

import pytest
from datetime import date
from fastapi import HTTPException

from leasehold.db import SessionLocal
from leasehold.models import Agreement
from leasehold.services.agreement_service import create_agreement, terminate_agreement
from leasehold.services.lease_rules import ensure_no_agreement_overlap

from lease_factories import mk_draft_agreement, mk_parties, principal


def test_overlap_blocked():
    db = SessionLocal()
    try:
        landlord, tenant, p = mk_parties(db)
        mk_draft_agreement(db, landlord=landlord, tenant=tenant, prop=p, start_date=date(2026, 1, 1))

        with pytest.raises(ValueError):
            ensure_no_agreement_overlap(
                db,
                property_id=p.id,
                start_date=date(2026, 6, 1),
                end_date=date(2026, 6, 30),
            )

        with pytest.raises(HTTPException) as ei:
            create_agreement(
                db, landlord=principal(landlord), tenant_id=tenant.id, property_id=p.id, start_date=date(2026, 12, 31)
            )
        assert ei.value.status_code == 409
    finally:
        db.close()


def test_terminated_agreement_releases_the_property():
    db = SessionLocal()
    try:
        landlord, tenant, p = mk_parties(db)
        a = mk_draft_agreement(db, landlord=landlord, tenant=tenant, prop=p, start_date=date(2026, 1, 1))
        terminate_agreement(db, agreement_id=a.id, actor=principal(landlord), reason="withdrawn")

        ensure_no_agreement_overlap(db, property_id=p.id, start_date=date(2026, 6, 1), end_date=date(2026, 6, 30))
        b = create_agreement(
            db, landlord=principal(landlord), tenant_id=tenant.id, property_id=p.id, start_date=date(2026, 6, 1)
        )
        assert b.status == "draft"
        assert db.query(Agreement).count() == 2
    finally:
        db.close()
