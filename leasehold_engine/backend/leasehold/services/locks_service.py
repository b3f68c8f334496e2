# backend/leasehold/services/locks_service.py
from __future__ import annotations

import os
import socket
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leasehold.models import BatchLock


def _now() -> datetime:
    return datetime.utcnow()


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def acquire_lock(db: Session, *, lock_key: str, owner: str | None, ttl_seconds: int) -> bool:
    """
    Advisory lock in DB. Commits on success so other instances see it.
    - returns True if lock acquired/renewed
    - returns False if held by someone else (and not expired)

    Steal and renew are one conditional UPDATE, so two instances racing for
    an expired lock cannot both win.
    """
    now = _now()
    expires = now + timedelta(seconds=int(ttl_seconds))

    res = db.execute(
        update(BatchLock)
        .where(
            BatchLock.lock_key == lock_key,
            or_(BatchLock.expires_at.is_(None), BatchLock.expires_at <= now, BatchLock.owner == (owner or "")),
        )
        .values(owner=owner, expires_at=expires)
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) == 1:
        db.commit()
        return True
    db.rollback()

    if db.scalar(select(BatchLock.id).where(BatchLock.lock_key == lock_key)) is not None:
        # held by someone else
        return False

    db.add(BatchLock(lock_key=lock_key, owner=owner, expires_at=expires, created_at=now))
    try:
        db.commit()
    except IntegrityError:
        # another instance inserted it first
        db.rollback()
        return False
    return True


def release_lock(db: Session, *, lock_key: str, owner: str | None) -> bool:
    q = update(BatchLock).where(BatchLock.lock_key == lock_key)
    if owner:
        # don't release someone else's lock
        q = q.where(BatchLock.owner == owner)
    res = db.execute(q.values(expires_at=_now() - timedelta(seconds=1)).execution_options(synchronize_session=False))
    db.commit()
    if int(res.rowcount or 0) == 1:
        return True
    return db.scalar(select(BatchLock.id).where(BatchLock.lock_key == lock_key)) is None


@contextmanager
def batch_lock(db: Session, *, lock_key: str, ttl_seconds: int, owner: str | None = None) -> Iterator[bool]:
    """Yields True when this process holds the lock for the duration of the block."""
    who = owner or default_owner()
    held = acquire_lock(db, lock_key=lock_key, owner=who, ttl_seconds=ttl_seconds)
    try:
        yield held
    finally:
        if held:
            db.rollback()
            release_lock(db, lock_key=lock_key, owner=who)
