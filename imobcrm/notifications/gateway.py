from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

import httpx

from imobcrm.core.config import get_settings


logger = logging.getLogger("imobcrm.notifications")


@dataclass(frozen=True, slots=True)
class InstanceRef:
    name: str
    token: str = ""


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    success: bool
    status_code: int | None = None
    error: str | None = None


class NotificationGateway(Protocol):
    def send(self, phone: str, text: str, instance: InstanceRef) -> DeliveryResult: ...


class WebhookWhatsAppGateway:
    """Posts messages to the chat automation webhook that drives WhatsApp."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("webhook url is required")
        self.url = url
        self.timeout = timeout
        self._transport = transport

    def send(self, phone: str, text: str, instance: InstanceRef) -> DeliveryResult:
        payload = {
            "number": phone,
            "text": text,
            "instance": instance.name,
            "token": instance.token,
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "notification.http_error",
                extra={"status_code": exc.response.status_code, "error": exc.response.text},
            )
            return DeliveryResult(success=False, status_code=exc.response.status_code, error=exc.response.text[:500])
        except httpx.HTTPError as exc:
            logger.warning("notification.transport_error", extra={"error": str(exc)})
            return DeliveryResult(success=False, error=str(exc)[:500])

        return DeliveryResult(success=True, status_code=response.status_code)


_gateway_lock = threading.Lock()
_gateway: NotificationGateway | None = None


def get_gateway() -> NotificationGateway | None:
    """Return the configured gateway, or None when no webhook is set."""

    global _gateway

    with _gateway_lock:
        if _gateway is None:
            settings = get_settings()
            if not settings.notification_webhook_url:
                return None
            _gateway = WebhookWhatsAppGateway(
                settings.notification_webhook_url,
                timeout=settings.notification_timeout_seconds,
            )
        return _gateway


def set_gateway(gateway: NotificationGateway | None) -> None:
    global _gateway

    with _gateway_lock:
        _gateway = gateway
