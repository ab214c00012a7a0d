import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from memberhub.core.config import settings
from memberhub.core.errors import NotificationError
from memberhub.utils.phone import mask_phone

logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    sent: bool
    channel: str
    error: str | None = None


class NotificationSender(Protocol):
    def send_payment_link(
        self,
        phone: str,
        email: str | None,
        amount: float,
        link: str,
        context: dict[str, Any],
    ) -> NotificationResult: ...


def payment_link_message(amount: float, link: str, context: dict[str, Any]) -> str:
    name = context.get("name") or "there"
    item = context.get("item") or "your membership"
    return (
        f"Hi {name}, your request for {item} has been approved. "
        f"Please complete the payment of {settings.currency} {amount:.2f} here: {link}"
    )


class WhatsAppNotifier:
    """Posts a text message to a WhatsApp Cloud API compatible endpoint."""

    def __init__(self, api_url: str | None = None, token: str | None = None, timeout: float = 20):
        self.api_url = api_url or settings.whatsapp_api_url
        self.token = token or settings.whatsapp_token
        self.timeout = timeout

    def send_payment_link(self, phone, email, amount, link, context) -> NotificationResult:
        payload = {
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "text",
            "text": {"body": payment_link_message(amount, link, context)},
        }
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                r = client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationError(f"WhatsApp request failed: {exc}") from exc

        if r.status_code not in (200, 201):
            raise NotificationError(
                "WhatsApp rejected the message",
                details={"wa_status": r.status_code, "wa_response": r.text},
            )
        logger.info("Payment link sent to %s via WhatsApp", mask_phone(phone))
        return NotificationResult(sent=True, channel="whatsapp")


class LogNotifier:
    def send_payment_link(self, phone, email, amount, link, context) -> NotificationResult:
        logger.info("Payment link for %s (%.2f): %s", mask_phone(phone), amount, link)
        return NotificationResult(sent=True, channel="log")


def default_notifier() -> NotificationSender:
    if settings.whatsapp_token and settings.whatsapp_api_url:
        return WhatsAppNotifier()
    return LogNotifier()
