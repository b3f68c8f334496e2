# backend/leasehold/services/webhook_signature.py
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Optional

log = logging.getLogger("leasehold.payments")


class WebhookSignatureError(ValueError):
    pass


def compute_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    signed_payload = str(int(timestamp)).encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def signature_header(secret: str, raw_body: bytes, timestamp: Optional[int] = None) -> str:
    """Builds a header value in the processor's format. Used by tests and local tooling."""
    ts = int(timestamp if timestamp is not None else time.time())
    return f"t={ts},v1={compute_signature(secret, ts, raw_body)}"


def _parse_header(header: str) -> tuple[int, list[str]]:
    ts: Optional[int] = None
    sigs: list[str] = []
    for part in (header or "").split(","):
        k, _, v = part.strip().partition("=")
        if k == "t":
            try:
                ts = int(v)
            except ValueError:
                raise WebhookSignatureError("invalid timestamp in signature header")
        elif k == "v1" and v:
            sigs.append(v)
    if ts is None or not sigs:
        raise WebhookSignatureError("malformed signature header")
    return ts, sigs


def verify_webhook_signature(
    raw_body: bytes,
    header: Optional[str],
    *,
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> int:
    """
    Verifies `t=<unix>,v1=<hex>` where v1 is HMAC-SHA256 of "<t>.<raw body>".

    Must run on the unmodified request bytes. Returns the signed timestamp;
    raises WebhookSignatureError on any mismatch.
    """
    if not secret:
        raise WebhookSignatureError("webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("missing signature header")

    ts, sigs = _parse_header(header)

    current = int(now if now is not None else time.time())
    if tolerance_seconds and abs(current - ts) > int(tolerance_seconds):
        raise WebhookSignatureError("signature timestamp outside tolerance")

    expected = compute_signature(secret, ts, raw_body)
    if not any(hmac.compare_digest(expected, s) for s in sigs):
        raise WebhookSignatureError("signature mismatch")
    return ts
