"""
Mercado Pago webhook plumbing: signature check, payment fetch and the
mapping of MP payment statuses onto our gateway events.
"""
import hashlib
import hmac
from typing import Any

import httpx

from memberhub.core.config import settings
from memberhub.core.errors import ExternalServiceError
from memberhub.integrations.gateway import (
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCESS,
    GatewayEvent,
)

MP_API_BASE = "https://api.mercadopago.com"

_STATUS_EVENTS = {
    "approved": PAYMENT_SUCCESS,
    "rejected": PAYMENT_FAILED,
    "cancelled": PAYMENT_FAILED,
    "refunded": PAYMENT_REFUNDED,
    "charged_back": PAYMENT_REFUNDED,
}


def _parse_x_signature(x_signature: str) -> tuple[str | None, str | None]:
    """
    x-signature looks like: "ts=1700000000,v1=abcdef..."
    """
    ts = None
    v1 = None
    for part in x_signature.split(","):
        k, _, v = part.strip().partition("=")
        if k == "ts":
            ts = v
        elif k == "v1":
            v1 = v
    return ts, v1


def signature_manifest(data_id: str, x_request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{x_request_id};ts:{ts};"


def verify_mp_signature(*, secret: str, x_signature: str, x_request_id: str, data_id: str) -> bool:
    """HMAC-SHA256 of the manifest with the webhook secret, hex, compared to v1."""
    ts, v1 = _parse_x_signature(x_signature)
    if not ts or not v1:
        return False

    manifest = signature_manifest(data_id, x_request_id, ts)
    digest = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, v1)


async def mp_get_json(path: str) -> dict[str, Any]:
    url = f"{MP_API_BASE}{path}"
    headers = {"Authorization": f"Bearer {settings.mp_access_token}"}
    try:
        async with httpx.AsyncClient(timeout=20) as client:
            r = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:
        raise ExternalServiceError(f"Mercado Pago request failed: {exc}") from exc

    if r.status_code != 200:
        # keep body as text to avoid json decode surprises
        raise ExternalServiceError(
            "Mercado Pago request failed",
            details={"mp_status": r.status_code, "mp_response": r.text, "url": url},
        )
    return r.json()


async def fetch_payment(payment_id: str) -> dict[str, Any]:
    return await mp_get_json(f"/v1/payments/{payment_id}")


def payment_to_event(payment: dict[str, Any]) -> GatewayEvent | None:
    """None for statuses we do not act on (pending, in_process, ...)."""
    event = _STATUS_EVENTS.get(payment.get("status") or "")
    order_id = payment.get("external_reference") or (payment.get("metadata") or {}).get("order_id")
    if not event or not order_id:
        return None

    return GatewayEvent(
        event=event,
        order_id=str(order_id),
        payment_id=str(payment["id"]) if payment.get("id") else None,
        reason=payment.get("status_detail"),
        raw=payment,
    )


async def fetch_merchant_order(merchant_order_id: str) -> dict[str, Any]:
    return await mp_get_json(f"/merchant_orders/{merchant_order_id}")
