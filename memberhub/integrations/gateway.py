"""
Payment gateway seam.

Approvals only talk to `PaymentGateway`; the Mercado Pago implementation
creates Checkout Pro preferences and uses our own order id as the
`external_reference`, which is what the webhook later hands back.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from memberhub.core.config import settings
from memberhub.core.errors import ExternalServiceError
from memberhub.integrations.mercadopago_client import is_test_token, mp_sdk

logger = logging.getLogger(__name__)


@dataclass
class GatewayOrder:
    order_id: str
    status: str
    gateway_ref: str | None = None
    checkout_url: str | None = None


@dataclass
class PaymentLink:
    link_id: str
    short_url: str
    order_id: str | None = None


@dataclass
class Customer:
    name: str
    phone: str
    email: str | None = None


@dataclass
class GatewayEvent:
    event: str  # PAYMENT_SUCCESS / PAYMENT_FAILED / PAYMENT_REFUNDED
    order_id: str
    payment_id: str | None = None
    reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
PAYMENT_FAILED = "PAYMENT_FAILED"
PAYMENT_REFUNDED = "PAYMENT_REFUNDED"


class PaymentGateway(Protocol):
    def create_order(self, amount_minor: int, currency: str, metadata: dict[str, Any]) -> GatewayOrder: ...

    def create_payment_link(
        self,
        amount_minor: int,
        customer: Customer,
        expires_at: datetime | None,
        metadata: dict[str, Any],
    ) -> PaymentLink: ...


def to_minor(amount: float) -> int:
    return int(round(float(amount) * 100))


class MercadoPagoGateway:
    def __init__(self, currency: str | None = None):
        self.currency = currency or settings.currency

    def _create_preference(self, preference_data: dict[str, Any]) -> dict[str, Any]:
        sdk = mp_sdk()
        try:
            result = sdk.preference().create(preference_data)
        except Exception as exc:
            logger.exception("Mercado Pago preference request failed")
            raise ExternalServiceError("Payment gateway is unavailable") from exc

        resp = result.get("response") or {}
        status = result.get("status")
        if status not in (200, 201):
            raise ExternalServiceError(
                "Payment gateway rejected the request",
                details={"mp_status": status, "mp_response": resp},
            )
        return resp

    @staticmethod
    def _init_point(resp: dict[str, Any]) -> str | None:
        if is_test_token():
            return resp.get("sandbox_init_point") or resp.get("init_point")
        return resp.get("init_point") or resp.get("sandbox_init_point")

    def _preference_payload(
        self,
        amount_minor: int,
        currency: str,
        title: str,
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        return {
            "items": [
                {
                    "title": title,
                    "quantity": 1,
                    "unit_price": amount_minor / 100,
                    "currency_id": currency,
                }
            ],
            # webhook correlates on this
            "external_reference": metadata["order_id"],
            "metadata": metadata,
            "notification_url": settings.mp_webhook_url,
            "back_urls": {
                "success": f"{settings.app_base_url}/payments/success",
                "failure": f"{settings.app_base_url}/payments/failure",
                "pending": f"{settings.app_base_url}/payments/pending",
            },
            "auto_return": "approved",
        }

    def create_order(self, amount_minor: int, currency: str, metadata: dict[str, Any]) -> GatewayOrder:
        payload = self._preference_payload(
            amount_minor, currency, metadata.get("title") or "Membership", metadata
        )
        resp = self._create_preference(payload)

        preference_id = resp.get("id")
        init_point = self._init_point(resp)
        if not preference_id or not init_point:
            raise ExternalServiceError("Payment gateway returned an incomplete order", details={"mp_response": resp})

        return GatewayOrder(
            order_id=metadata["order_id"],
            status="created",
            gateway_ref=str(preference_id),
            checkout_url=init_point,
        )

    def create_payment_link(
        self,
        amount_minor: int,
        customer: Customer,
        expires_at: datetime | None,
        metadata: dict[str, Any],
    ) -> PaymentLink:
        payload = self._preference_payload(
            amount_minor, self.currency, metadata.get("title") or "Membership", metadata
        )
        payload["payer"] = {"name": customer.name, "phone": {"number": customer.phone}}
        if customer.email:
            payload["payer"]["email"] = customer.email
        if expires_at is not None:
            payload["expires"] = True
            payload["expiration_date_to"] = expires_at.isoformat()

        resp = self._create_preference(payload)

        preference_id = resp.get("id")
        init_point = self._init_point(resp)
        if not preference_id or not init_point:
            raise ExternalServiceError("Payment gateway returned an incomplete link", details={"mp_response": resp})

        return PaymentLink(link_id=str(preference_id), short_url=init_point, order_id=metadata["order_id"])
