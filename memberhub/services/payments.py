"""
Gateway event processing and the in-app (optimistic) order path.

Webhooks are delivered at least once and possibly concurrently. Duplicates
are absorbed by the Payment status, the entitlement guards and the unique
order_id.
"""
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, or_, update
from sqlalchemy.orm import Session

from memberhub.core.errors import ConflictError, NotFoundError
from memberhub.integrations.gateway import (
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCESS,
    GatewayEvent,
    GatewayOrder,
    PaymentGateway,
    to_minor,
)
from memberhub.models.entitlement import PaymentStatus, PurchaseMethod
from memberhub.models.membership import UserMembership
from memberhub.models.payment import Payment, PaymentType
from memberhub.models.plan import MembershipPlan, Service
from memberhub.models.requests import MembershipRequest, RequestStatus, ServiceRequest
from memberhub.models.subscription import UserServiceSubscription
from memberhub.services import entitlements
from memberhub.utils.phone import mask_phone, require_phone

logger = logging.getLogger(__name__)


def _update_payment(db: Session, payment: Payment, guard: ColumnElement[bool], values: dict[str, Any]) -> bool:
    result = db.execute(
        update(Payment)
        .where(Payment.id == payment.id, guard)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def subscription_order_id(order_id: str, position: int) -> str:
    return f"{order_id}_{position}"


# ---------------------------
# in-app purchase
# ---------------------------

def create_membership_order(
    db: Session,
    plan_id: int,
    phone: str,
    *,
    now: datetime,
    gateway: PaymentGateway,
    currency: str,
) -> tuple[UserMembership, GatewayOrder]:
    """
    Optimistic path: the membership is written ACTIVE with payment PENDING
    right away and only becomes usable once the webhook confirms payment.
    """
    phone = require_phone(phone)
    plan = db.get(MembershipPlan, plan_id)
    if not plan or plan.is_deleted:
        raise NotFoundError("Membership plan not found")

    order_id = entitlements.new_order_id("MEM")
    order = gateway.create_order(
        to_minor(plan.price),
        currency,
        {"order_id": order_id, "type": PaymentType.MEMBERSHIP.value, "plan_id": plan.id, "title": plan.name},
    )

    membership = entitlements.create_membership(
        db, plan, phone, float(plan.price), PurchaseMethod.IN_APP, now=now, order_id=order_id,
    )
    payment = Payment(
        order_id=order_id,
        type=PaymentType.MEMBERSHIP.value,
        phone=phone,
        user_id=membership.user_id,
        amount=float(plan.price),
        discount_amount=0,
        final_amount=float(plan.price),
        payment_link_id=order.gateway_ref,
        meta={"plan_id": plan.id, "membership_id": membership.id},
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    db.commit()

    logger.info("In-app order %s created for %s (plan=%s)", order_id, mask_phone(phone), plan.id)
    return membership, order


# ---------------------------
# webhook events
# ---------------------------

def process_gateway_event(db: Session, event: GatewayEvent, *, now: datetime) -> dict[str, Any]:
    payment = db.query(Payment).filter(Payment.order_id == event.order_id).first()
    if not payment:
        logger.warning("Webhook %s for unknown order %s ignored", event.event, event.order_id)
        return {"ok": True, "ignored": "unknown_order"}

    if event.event == PAYMENT_SUCCESS:
        return _handle_success(db, payment, event, now)
    if event.event == PAYMENT_FAILED:
        return _handle_failure(db, payment, event, now)
    if event.event == PAYMENT_REFUNDED:
        return _handle_refund(db, payment, now)

    logger.warning("Unsupported gateway event %s for order %s", event.event, event.order_id)
    return {"ok": True, "ignored": event.event}


def _handle_success(db: Session, payment: Payment, event: GatewayEvent, now: datetime) -> dict[str, Any]:
    """
    Fulfil first, then mark the Payment paid. A crash in between leaves the
    Payment unpaid so the gateway's redelivery finishes the job; fulfilment
    itself is idempotent.
    """
    if payment.status == PaymentStatus.SUCCESS:
        logger.info("Order %s already marked paid", payment.order_id)
        return {"ok": True, "idempotent": True}

    logger.info("Order %s paid (%s, payment_id=%s)", payment.order_id, payment.type, event.payment_id)
    result = _fulfil(db, payment, event, now)

    applied = _update_payment(
        db,
        payment,
        Payment.status != PaymentStatus.SUCCESS.value,
        {
            "status": PaymentStatus.SUCCESS.value,
            "payment_id": event.payment_id,
            "purchased_at": now,
            "updated_at": now,
        },
    )
    if not applied:
        logger.info("Order %s was marked paid by a concurrent delivery", payment.order_id)
    return result


def _fulfil(db: Session, payment: Payment, event: GatewayEvent, now: datetime) -> dict[str, Any]:
    if payment.type == PaymentType.MEMBERSHIP:
        ent = entitlements.get_by_order_id(db, UserMembership, payment.order_id)
        if not ent:
            logger.warning("No membership found for paid order %s", payment.order_id)
            return {"ok": True, "warning": "membership_not_found"}
        confirmed = entitlements.confirm_payment(db, ent, event.payment_id, payment.user_id, now=now)
        return {"ok": True, "activated": confirmed}

    if payment.type == PaymentType.MEMBERSHIP_REQUEST:
        return _complete_membership_request(db, payment, event, now)

    if payment.type == PaymentType.SERVICE_REQUEST:
        return _complete_service_request(db, payment, event, now)

    return {"ok": True, "ignored": payment.type}


def _complete_membership_request(db: Session, payment: Payment, event: GatewayEvent, now: datetime) -> dict[str, Any]:
    meta = payment.meta or {}
    req = db.get(MembershipRequest, meta.get("membership_request_id"))
    if not req:
        logger.warning("Membership request for order %s not found", payment.order_id)
        return {"ok": True, "warning": "request_not_found"}

    plan = db.get(MembershipPlan, req.approved_plan_id or meta.get("plan_id"))
    if not plan:
        logger.warning("Plan for order %s not found", payment.order_id)
        return {"ok": True, "warning": "plan_not_found"}

    try:
        membership = entitlements.create_membership(
            db,
            plan,
            payment.phone,
            float(payment.final_amount),
            PurchaseMethod.REQUEST,
            now=now,
            order_id=payment.order_id,
            payment_id=event.payment_id,
            user_id=payment.user_id,
            meta={"membership_request_id": req.id},
            # already paid; limits were checked at approval
            check_availability=False,
        )
    except ConflictError:
        # concurrent redelivery won the insert
        membership = entitlements.get_by_order_id(db, UserMembership, payment.order_id)
        logger.info("Membership for order %s already exists", payment.order_id)

    db.execute(
        update(MembershipRequest)
        .where(
            MembershipRequest.id == req.id,
            MembershipRequest.status == RequestStatus.PAYMENT_SENT.value,
        )
        .values(
            status=RequestStatus.COMPLETED.value,
            user_membership_id=membership.id,
            payment_id=event.payment_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    logger.info("Membership request %s completed (membership %s)", req.id, membership.id)
    return {"ok": True, "membership_id": membership.id}


def _complete_service_request(db: Session, payment: Payment, event: GatewayEvent, now: datetime) -> dict[str, Any]:
    meta = payment.meta or {}
    req = db.get(ServiceRequest, meta.get("service_request_id"))
    if not req:
        logger.warning("Service request for order %s not found", payment.order_id)
        return {"ok": True, "warning": "request_not_found"}

    created = []
    for position, item in enumerate(req.services or []):
        service = db.get(Service, item["service_id"])
        if not service:
            logger.warning("Service %s on request %s no longer exists", item["service_id"], req.id)
            continue
        try:
            subscription = entitlements.create_subscription(
                db,
                service,
                payment.phone,
                float(item.get("price") or 0),
                now=now,
                order_id=subscription_order_id(payment.order_id, position),
                payment_id=event.payment_id,
                user_id=payment.user_id or req.user_id,
                service_request_id=req.id,
                check_availability=False,
            )
        except ConflictError:
            logger.info("Subscription %s for order %s already exists", position, payment.order_id)
            continue
        created.append(subscription.id)

    db.execute(
        update(ServiceRequest)
        .where(ServiceRequest.id == req.id, ServiceRequest.status == RequestStatus.PAYMENT_SENT.value)
        .values(status=RequestStatus.COMPLETED.value, payment_id=event.payment_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    logger.info("Service request %s completed (%s subscription(s))", req.id, len(created))
    return {"ok": True, "subscription_ids": created}


def _handle_failure(db: Session, payment: Payment, event: GatewayEvent, now: datetime) -> dict[str, Any]:
    reason = event.reason or "Payment failed"
    applied = _update_payment(
        db,
        payment,
        Payment.status == PaymentStatus.PENDING.value,
        {
            "status": PaymentStatus.FAILED.value,
            "payment_id": event.payment_id,
            "failure_reason": reason,
            "updated_at": now,
        },
    )
    if not applied:
        logger.info("Failure for order %s ignored (status %s)", payment.order_id, payment.status)
        return {"ok": True, "idempotent": True}

    logger.info("Order %s failed: %s", payment.order_id, reason)
    if payment.type == PaymentType.MEMBERSHIP:
        ent = entitlements.get_by_order_id(db, UserMembership, payment.order_id)
        if ent:
            entitlements.mark_payment_failed(db, ent, reason, now=now)
    # request-driven orders keep their link; the user can pay again
    return {"ok": True, "failed": True}


def _handle_refund(db: Session, payment: Payment, now: datetime) -> dict[str, Any]:
    applied = _update_payment(
        db,
        payment,
        Payment.status != PaymentStatus.REFUNDED.value,
        {"status": PaymentStatus.REFUNDED.value, "updated_at": now},
    )
    if not applied:
        return {"ok": True, "idempotent": True}

    refunded = 0
    for ent in _entitlements_for_order(db, payment.order_id):
        if entitlements.mark_refunded(db, ent, now=now):
            refunded += 1

    logger.info("Order %s refunded (%s entitlement(s))", payment.order_id, refunded)
    return {"ok": True, "refunded": refunded}


def _entitlements_for_order(db: Session, order_id: str) -> list:
    memberships = db.query(UserMembership).filter(UserMembership.order_id == order_id).all()
    subscriptions = (
        db.query(UserServiceSubscription)
        .filter(
            or_(
                UserServiceSubscription.order_id == order_id,
                UserServiceSubscription.order_id.startswith(f"{order_id}_", autoescape=True),
            )
        )
        .all()
    )
    return [*memberships, *subscriptions]
