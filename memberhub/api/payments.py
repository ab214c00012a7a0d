import asyncio
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from memberhub.api.deps import get_now
from memberhub.core.config import settings
from memberhub.db.session import get_db
from memberhub.integrations.mp_webhooks import (
    fetch_merchant_order,
    fetch_payment,
    payment_to_event,
    verify_mp_signature,
)
from memberhub.services.payments import process_gateway_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _pick_latest_payment_id_from_merchant_order(mo: dict[str, Any]) -> str | None:
    payments = mo.get("payments") or []
    for p in reversed(payments):
        pid = p.get("id")
        if pid:
            return str(pid)
    return None


async def _resolve_payment_id_from_merchant_order(
    merchant_order_id: str,
    attempts: int = 10,
    base_delay_seconds: float = 1.2,
) -> tuple[str | None, dict[str, Any]]:
    """
    MP may send merchant_order before payments[] is populated.
    We do short polling.
    """
    last_mo: dict[str, Any] = {}
    for i in range(attempts):
        mo = await fetch_merchant_order(merchant_order_id)
        last_mo = mo

        pid = _pick_latest_payment_id_from_merchant_order(mo)
        if pid:
            return pid, mo

        await asyncio.sleep(base_delay_seconds * (1.0 + i * 0.35))

    return None, last_mo


def _maybe_verify_signature(request: Request, data_id: str) -> None:
    """
    Verify the MP signature only when a webhook secret is configured.
    Sandbox and some topics omit the headers.
    """
    if not settings.mp_webhook_secret:
        return

    x_signature = request.headers.get("x-signature", "")
    x_request_id = request.headers.get("x-request-id", "")

    if not x_signature or not x_request_id:
        logger.warning("MP signature headers missing; skipping verification for %s", data_id)
        return

    ok = verify_mp_signature(
        secret=settings.mp_webhook_secret,
        x_signature=x_signature,
        x_request_id=x_request_id,
        data_id=str(data_id),
    )
    if not ok:
        raise HTTPException(401, "Invalid signature")


def _extract_id_from_resource_url(resource: str, needle: str) -> str | None:
    """
    resource example: https://api.mercadolibre.com/merchant_orders/123
    """
    if not resource or needle not in resource:
        return None
    return resource.rstrip("/").split("/")[-1] or None


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    qp = dict(request.query_params)
    try:
        body = await request.json()
    except ValueError:
        body = {}

    logger.info("Webhook hit %s", qp)

    topic = qp.get("topic") or body.get("topic")
    mp_type = body.get("type") or qp.get("type")
    resource = body.get("resource") or ""
    data = body.get("data") or {}

    payment_id: str | None = None

    # Direct payment event
    if mp_type == "payment":
        payment_id = data.get("id") or qp.get("data.id") or qp.get("id")
        payment_id = str(payment_id) if payment_id else None

    # Merchant order event (IPN style)
    if not payment_id and topic == "merchant_order":
        merchant_order_id = qp.get("id") or _extract_id_from_resource_url(resource, "merchant_orders")
        if not merchant_order_id:
            return {"ok": True, "ignored": "merchant_order_no_id"}

        _maybe_verify_signature(request, data_id=str(merchant_order_id))

        payment_id, mo = await _resolve_payment_id_from_merchant_order(str(merchant_order_id))
        if not payment_id:
            logger.warning("merchant_order %s had no payments after retries", merchant_order_id)
            return {"ok": True, "ignored": "merchant_order_no_payments_yet"}

    if not payment_id:
        return {"ok": True, "ignored": True}

    _maybe_verify_signature(request, data_id=str(payment_id))

    payment = await fetch_payment(str(payment_id))
    event = payment_to_event(payment)
    if event is None:
        logger.info("Payment %s status %s needs no action", payment_id, payment.get("status"))
        return {"ok": True, "ignored": payment.get("status")}

    return process_gateway_event(db, event, now=now)
