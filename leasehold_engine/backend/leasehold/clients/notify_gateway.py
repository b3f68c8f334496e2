# backend/leasehold/clients/notify_gateway.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..config import settings

log = logging.getLogger("leasehold.notifications.gateway")

CHANNELS = ("email", "sms", "push")


class NotificationDeliveryError(RuntimeError):
    """Raised when a channel send fails; the job runner turns it into a retry."""


@dataclass(frozen=True)
class SendResult:
    channel: str
    to: str
    template: str
    provider_id: Optional[str] = None


class NotifyGatewayClient:
    """
    Email/SMS/push are owned by an external messaging gateway that renders
    templates by name. We only post {channel, to, template, params}.

    Without a configured gateway URL, sends are written to the log instead
    (local development, tests).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        url = base_url if base_url is not None else settings.notification_gateway_url
        self.base = (url or "").rstrip("/")
        self.token = token if token is not None else settings.notification_gateway_token
        self.timeout = float(settings.notification_gateway_timeout_seconds)
        self.transport = transport

    def enabled(self) -> bool:
        return bool(self.base)

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def send(self, *, channel: str, to: str, template: str, params: dict[str, Any]) -> SendResult:
        if channel not in CHANNELS:
            raise ValueError(f"unknown channel: {channel}")

        if not self.enabled():
            log.info(
                "notification (log sink) channel=%s to=%s template=%s params=%s",
                channel,
                to,
                template,
                params,
            )
            return SendResult(channel=channel, to=to, template=template)

        body = {"channel": channel, "to": to, "template": template, "params": params}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                r = client.post(f"{self.base}/messages", headers=self._headers(), json=body)
                r.raise_for_status()
                data = r.json() if r.content else {}
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"{channel} send failed: {e}") from e

        provider_id = data.get("id") if isinstance(data, dict) else None
        return SendResult(channel=channel, to=to, template=template, provider_id=provider_id)


_gateway: Optional[NotifyGatewayClient] = None


def get_gateway() -> NotifyGatewayClient:
    global _gateway
    if _gateway is None:
        _gateway = NotifyGatewayClient()
    return _gateway
