# backend/leasehold/main.py
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .logging_config import configure_logging

from .middleware.request_id import RequestIDMiddleware
from .middleware.structured_logging import StructuredLoggingMiddleware

from .routers.health import router as health_router
from .routers.agreements import router as agreements_router
from .routers.applications import router as applications_router
from .routers.payments import router as payments_router
from .routers.notifications import router as notifications_router
from .routers.admin import router as admin_router

API_PREFIX = "/api"


def _cors_origins() -> list[str]:
    val = getattr(settings, "cors_allow_origins", ["*"])
    if isinstance(val, str):
        v = val.strip()
        return ["*"] if v == "*" else [x.strip() for x in v.split(",") if x.strip()]
    if isinstance(val, list) and val:
        return val
    return ["*"]


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="Leasehold Engine",
        version=settings.app_version,
    )

    # starlette runs the last-added middleware first: request id must wrap logging
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Core
    app.include_router(health_router, prefix=API_PREFIX)

    # Lease lifecycle
    app.include_router(applications_router, prefix=API_PREFIX)
    app.include_router(agreements_router, prefix=API_PREFIX)

    # Settlement (webhook is unauthenticated; the signature is the auth)
    app.include_router(payments_router, prefix=API_PREFIX)

    # Operators
    app.include_router(notifications_router, prefix=API_PREFIX)
    app.include_router(admin_router, prefix=API_PREFIX)

    return app


app = create_app()
