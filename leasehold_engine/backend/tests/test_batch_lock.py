# backend/tests/test_batch_lock.py
from __future__ import annotations

from datetime import date, datetime, timedelta

from sqlalchemy import select

from leasehold.db import SessionLocal
from leasehold.models import BatchLock
from leasehold.services.locks_service import acquire_lock, release_lock
from leasehold.services.rent_batches import run_expiry_sweep, run_late_fee_sweep


def test_second_holder_is_refused_until_release():
    db = SessionLocal()
    try:
        assert acquire_lock(db, lock_key="batch:late_fees", owner="worker-a", ttl_seconds=60) is True
        assert acquire_lock(db, lock_key="batch:late_fees", owner="worker-b", ttl_seconds=60) is False
        # same owner renews
        assert acquire_lock(db, lock_key="batch:late_fees", owner="worker-a", ttl_seconds=60) is True

        # only the holder can release
        assert release_lock(db, lock_key="batch:late_fees", owner="worker-b") is False
        assert release_lock(db, lock_key="batch:late_fees", owner="worker-a") is True
        assert acquire_lock(db, lock_key="batch:late_fees", owner="worker-b", ttl_seconds=60) is True
    finally:
        db.close()


def test_expired_lock_is_taken_over():
    db = SessionLocal()
    try:
        db.add(BatchLock(lock_key="batch:expiry", owner="dead-host:1", expires_at=datetime.utcnow() - timedelta(minutes=1)))
        db.commit()

        assert acquire_lock(db, lock_key="batch:expiry", owner="worker-a", ttl_seconds=60) is True
        db.expire_all()
        row = db.scalar(select(BatchLock).where(BatchLock.lock_key == "batch:expiry"))
        assert row.owner == "worker-a"
    finally:
        db.close()


def test_sweep_is_skipped_while_another_instance_holds_the_lock():
    db = SessionLocal()
    try:
        assert acquire_lock(db, lock_key="batch:late_fees", owner="other-instance", ttl_seconds=600)

        r = run_late_fee_sweep(db, today=date(2026, 3, 1))
        assert r.skipped is True
        assert r.scanned == 0

        # locks are per batch
        assert run_expiry_sweep(db, today=date(2026, 3, 1)).skipped is False

        release_lock(db, lock_key="batch:late_fees", owner="other-instance")
        assert run_late_fee_sweep(db, today=date(2026, 3, 1)).skipped is False
    finally:
        db.close()


def test_only_one_instance_steals_an_expired_lock():
    seed = SessionLocal()
    try:
        seed.add(BatchLock(lock_key="batch:late_fees", owner="dead-host:1", expires_at=datetime.utcnow() - timedelta(minutes=1)))
        seed.commit()
    finally:
        seed.close()

    a = SessionLocal()
    b = SessionLocal()
    try:
        # both instances have loaded the expired row before either acts
        for s in (a, b):
            assert s.scalar(select(BatchLock).where(BatchLock.lock_key == "batch:late_fees")).owner == "dead-host:1"
            s.commit()

        assert acquire_lock(a, lock_key="batch:late_fees", owner="worker-a", ttl_seconds=60) is True
        assert acquire_lock(b, lock_key="batch:late_fees", owner="worker-b", ttl_seconds=60) is False

        b.expire_all()
        assert b.scalar(select(BatchLock).where(BatchLock.lock_key == "batch:late_fees")).owner == "worker-a"
    finally:
        a.close()
        b.close()
