# backend/leasehold/auth.py
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .models import AppUser


@dataclass(frozen=True)
class Principal:
    user_id: int
    email: str
    name: str
    role: str  # tenant | landlord | property_manager | admin

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _header_name() -> str:
    mode = (settings.auth_mode or "dev").strip().lower()
    if mode == "dev":
        return settings.dev_header_user_id
    if mode == "gateway":
        return settings.gateway_header_user_id
    raise HTTPException(status_code=500, detail=f"Unsupported auth_mode: {settings.auth_mode}")


def principal_from_user(user: AppUser) -> Principal:
    return Principal(
        user_id=int(user.id),
        email=str(user.email),
        name=str(user.name or ""),
        role=str(user.role or "tenant"),
    )


def get_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    """
    Resolves the caller. Authentication itself (login, sessions, 2FA) happens
    upstream; this only maps the identity header onto a known user.
    """
    raw = request.headers.get(_header_name())
    if not raw:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        user_id = int(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id header")

    user = db.scalar(select(AppUser).where(AppUser.id == user_id))
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return principal_from_user(user)


def require_admin(principal: Principal) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Requires admin role")
    return principal


def get_admin(principal: Principal = Depends(get_principal)) -> Principal:
    return require_admin(principal)


def client_address(request: Request) -> str | None:
    fwd = request.headers.get("X-Forwarded-For")
    if fwd:
        return fwd.split(",")[0].strip() or None
    return request.client.host if request.client else None
