# backend/leasehold/middleware/request_id.py
from __future__ import annotations

import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

_SAFE_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def get_request_id() -> str | None:
    return request_id_ctx.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """
    Binds a correlation id outside of an HTTP request.

    Celery tasks, batch sweeps and drain threads use it so that every log line
    for one notification job or one sweep run shares an id (`job-42`,
    `batch-late_fees-2026-03-01`). An id already bound by the caller wins.
    """
    current = request_id_ctx.get()
    if current:
        yield current
        return
    token = request_id_ctx.set(correlation_id)
    try:
        yield correlation_id
    finally:
        request_id_ctx.reset(token)


def _incoming_id(request: Request) -> str | None:
    rid = request.headers.get("X-Request-ID") or request.headers.get("X-Request-Id")
    if rid and _SAFE_ID.match(rid):
        return rid
    return None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Sets a per-request id and echoes it in X-Request-ID.

    An upstream id is reused when it looks like an id; anything else (too long,
    odd characters) is replaced by a fresh uuid4 so it cannot be used to inject
    into log lines.
    """

    header_out = "X-Request-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rid = _incoming_id(request) or str(uuid.uuid4())

        request.state.request_id = rid
        token = request_id_ctx.set(rid)
        try:
            resp = await call_next(request)
            resp.headers[self.header_out] = rid
            return resp
        finally:
            request_id_ctx.reset(token)
