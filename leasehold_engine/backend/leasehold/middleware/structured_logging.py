# backend/leasehold/middleware/structured_logging.py
from __future__ import annotations

import logging
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..config import settings

log = logging.getLogger("leasehold.request")

_QUIET_PATHS = ("/api/health",)


def _caller_id(request: Request) -> str | None:
    header = settings.gateway_header_user_id if settings.auth_mode == "gateway" else settings.dev_header_user_id
    return request.headers.get(header)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    One access line per request (method, path, status, latency, caller).

    Runs inside RequestIDMiddleware, so the formatter picks the request id up
    from the context. Query strings and bodies are not logged: the webhook
    body carries payment data and the signature header is a credential.
    Health probes log at DEBUG, 5xx at ERROR, slow requests at WARNING.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        t0 = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.perf_counter() - t0) * 1000)
            path = request.url.path

            if status_code >= 500:
                level = logging.ERROR
            elif latency_ms >= int(settings.slow_request_ms):
                level = logging.WARNING
            elif path in _QUIET_PATHS:
                level = logging.DEBUG
            else:
                level = logging.INFO

            log.log(
                level,
                "%s %s -> %s",
                request.method,
                path,
                status_code,
                extra={
                    "method": request.method,
                    "path": path,
                    "status_code": status_code,
                    "latency_ms": latency_ms,
                    "user_id": _caller_id(request),
                },
            )
