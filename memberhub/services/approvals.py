"""
Request approval workflows.

Membership and service requests follow the same path:

    PENDING --approve--> PAYMENT_SENT --webhook success--> COMPLETED
    PENDING --reject--> REJECTED

Approval talks to the payment gateway *before* touching the database. If the
gateway fails the request stays PENDING and nothing is written. The Payment
row and the request transition are then committed together; the payment
link notification is best effort.

Club join requests have no payment: approval adds the member directly.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from memberhub.core.config import settings
from memberhub.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    NotificationError,
    ValidationError,
)
from memberhub.integrations.accounts import AccountLookup, SqlAccountLookup
from memberhub.integrations.coupons import CouponValidator, DisabledCouponValidator
from memberhub.integrations.gateway import Customer, PaymentGateway, to_minor
from memberhub.integrations.notifications import NotificationResult, NotificationSender
from memberhub.models.club import Club, ClubJoinRequest, ClubMember
from memberhub.models.membership import UserMembership
from memberhub.models.payment import Payment, PaymentType
from memberhub.models.plan import MembershipPlan, Service
from memberhub.models.requests import MembershipRequest, RequestStatus, ServiceRequest
from memberhub.services.entitlements import find_active_entitlement, new_order_id
from memberhub.utils.dt import as_utc_aware
from memberhub.utils.phone import mask_phone, require_phone

logger = logging.getLogger(__name__)


@dataclass
class ApprovalResult:
    request: MembershipRequest | ServiceRequest
    payment: Payment
    payment_url: str
    notification: NotificationResult | None = None


@dataclass
class ClubJoinOutcome:
    joined: bool
    request: ClubJoinRequest | None = None
    member: ClubMember | None = None


# ---------------------------
# shared helpers
# ---------------------------

def _clean_name(name: str | None) -> str:
    name = (name or "").strip()
    if len(name) < 2:
        raise ValidationError("Name must be at least 2 characters", field="name")
    return name


def _transition(db: Session, req: Any, expected: str, values: dict[str, Any], *, commit: bool = True) -> bool:
    """Conditional status change; False when the request moved on in the meantime."""
    model = type(req)
    stmt = update(model).where(model.id == req.id, model.status == expected)
    if hasattr(model, "is_deleted"):
        stmt = stmt.where(model.is_deleted.is_(False))
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if commit:
        db.commit()
    return result.rowcount == 1


def _get_live(db: Session, model: Any, request_id: int, label: str) -> Any:
    req = db.get(model, request_id)
    if not req or getattr(req, "is_deleted", False):
        raise NotFoundError(f"{label} not found")
    return req


def _require_pending(req: Any, action: str, done: str) -> None:
    if req.status != RequestStatus.PENDING:
        raise InvalidStateError(
            f"Cannot {action} request with status: {req.status}. Only PENDING requests can be {done}."
        )


def _pending_conflict(existing: Any, message: str) -> ConflictError:
    submitted = as_utc_aware(existing.created_at)
    return ConflictError(
        message,
        details={
            "existingRequestId": existing.id,
            "canWithdraw": True,
            "submittedAt": submitted.isoformat() if submitted else None,
        },
    )


def _apply_coupon(
    coupons: CouponValidator,
    code: str | None,
    amount: float,
    phone: str,
    purchase_type: str,
) -> tuple[float, float, str | None]:
    """Returns (final_amount, discount_amount, applied_code)."""
    if not code:
        return amount, 0.0, None
    result = coupons.validate(code, amount, phone, purchase_type)
    if not result.is_valid:
        raise ValidationError(f"Coupon error: {result.error}", field="coupon_code")
    return result.final_amount, result.discount_amount, code


def _notify(
    notifier: NotificationSender | None,
    phone: str,
    email: str | None,
    amount: float,
    link: str,
    context: dict[str, Any],
) -> NotificationResult | None:
    if notifier is None:
        return None
    try:
        return notifier.send_payment_link(phone, email, amount, link, context)
    except Exception as exc:
        logger.exception("Payment link notification to %s failed", mask_phone(phone))
        return NotificationResult(sent=False, channel="unknown", error=str(exc))


def _issue_payment_link(
    db: Session,
    req: MembershipRequest | ServiceRequest,
    *,
    payment_type: PaymentType,
    order_prefix: str,
    title: str,
    original_amount: float,
    amount: float,
    discount: float,
    coupon_code: str | None,
    user_id: int | None,
    email: str | None,
    metadata: dict[str, Any],
    request_values: dict[str, Any],
    admin_id: int,
    now: datetime,
    gateway: PaymentGateway,
) -> tuple[Payment, str]:
    order_id = new_order_id(order_prefix)
    expires_at = now + timedelta(days=settings.payment_link_expiry_days)
    metadata = {**metadata, "order_id": order_id, "type": payment_type.value, "title": title}

    # gateway first: on failure nothing below runs and the request stays PENDING
    link = gateway.create_payment_link(
        to_minor(amount),
        Customer(name=req.name, phone=req.phone, email=email),
        expires_at,
        metadata,
    )

    payment = Payment(
        order_id=order_id,
        type=payment_type.value,
        phone=req.phone,
        user_id=user_id,
        amount=original_amount,
        discount_amount=discount,
        final_amount=amount,
        coupon_code=coupon_code,
        payment_link_id=link.link_id,
        expires_at=expires_at,
        meta=metadata,
        created_at=now,
        updated_at=now,
    )
    db.add(payment)

    moved = _transition(
        db,
        req,
        RequestStatus.PENDING.value,
        {
            **request_values,
            "status": RequestStatus.PAYMENT_SENT.value,
            "reviewed_by": admin_id,
            "reviewed_at": now,
            "original_amount": original_amount,
            "payment_amount": amount,
            "discount_amount": discount,
            "coupon_code": coupon_code,
            "payment_link_id": link.link_id,
            "payment_url": link.short_url,
            "order_id": order_id,
            "updated_at": now,
        },
        commit=False,
    )
    if not moved:
        db.rollback()
        logger.warning("Request %s changed during approval; payment link %s abandoned", req.id, link.link_id)
        raise InvalidStateError("Request was already reviewed by someone else")

    db.commit()
    db.refresh(payment)
    return payment, link.short_url


def _reject(db: Session, model: Any, request_id: int, admin_id: int, reason: str, *, now: datetime, label: str):
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required", field="rejection_reason")

    req = _get_live(db, model, request_id, label)
    _require_pending(req, "reject", "rejected")

    moved = _transition(
        db,
        req,
        RequestStatus.PENDING.value,
        {
            "status": RequestStatus.REJECTED.value,
            "reviewed_by": admin_id,
            "reviewed_at": now,
            "rejection_reason": reason,
            "updated_at": now,
        },
    )
    if not moved:
        raise InvalidStateError("Request was already reviewed by someone else")

    logger.info("%s %s rejected by admin %s", label, req.id, admin_id)
    return req


# ---------------------------
# membership requests
# ---------------------------

def submit_membership_request(
    db: Session,
    phone: str,
    name: str,
    requested_plan_id: int | None = None,
    coupon_code: str | None = None,
    *,
    now: datetime,
    coupons: CouponValidator | None = None,
    accounts: AccountLookup | None = None,
) -> MembershipRequest:
    phone = require_phone(phone)
    name = _clean_name(name)

    existing = (
        db.query(MembershipRequest)
        .filter(
            MembershipRequest.phone == phone,
            MembershipRequest.status == RequestStatus.PENDING.value,
            MembershipRequest.is_deleted.is_(False),
        )
        .first()
    )
    if existing:
        raise _pending_conflict(
            existing,
            "You already have a pending membership request. Please wait for admin review or withdraw it.",
        )

    active = find_active_entitlement(db, UserMembership, phone, now=now)
    if active:
        if active.lifetime:
            raise ConflictError("You already have an active lifetime membership")
        days = active.days_remaining(now)
        raise ConflictError(
            f"You already have an active membership with {days} days remaining",
            details={"membershipId": active.id, "daysRemaining": days},
        )

    plan = None
    if requested_plan_id is not None:
        plan = db.get(MembershipPlan, requested_plan_id)
        if not plan or plan.is_deleted:
            raise NotFoundError("Membership plan not found")
        ok, reason = plan.can_be_purchased()
        if not ok:
            raise ValidationError(reason, field="requested_plan_id")

    if coupon_code:
        if plan is None:
            raise ValidationError("A plan must be selected to apply a coupon", field="coupon_code")
        _apply_coupon(coupons or DisabledCouponValidator(), coupon_code, plan.price, phone, PaymentType.MEMBERSHIP.value)

    user = (accounts or SqlAccountLookup(db)).find_by_phone(phone)

    req = MembershipRequest(
        phone=phone,
        name=name,
        requested_plan_id=requested_plan_id,
        coupon_code=coupon_code,
        existing_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    db.add(req)
    db.commit()
    db.refresh(req)

    logger.info("Membership request %s submitted by %s", req.id, mask_phone(phone))
    return req


def withdraw_membership_request(db: Session, request_id: int, phone: str, *, now: datetime) -> MembershipRequest:
    phone = require_phone(phone)
    req = _get_live(db, MembershipRequest, request_id, "Membership request")
    if req.phone != phone:
        raise NotFoundError("Membership request not found")
    if req.status != RequestStatus.PENDING:
        raise InvalidStateError("Only pending requests can be withdrawn")

    moved = _transition(db, req, RequestStatus.PENDING.value, {"is_deleted": True, "deleted_at": now, "updated_at": now})
    if not moved:
        raise InvalidStateError("Only pending requests can be withdrawn")

    logger.info("Membership request %s withdrawn by %s", req.id, mask_phone(phone))
    return req


def approve_membership_request(
    db: Session,
    request_id: int,
    admin_id: int,
    plan_id: int,
    payment_amount: float | None = None,
    coupon_code: str | None = None,
    admin_notes: str | None = None,
    send_notification: bool = True,
    *,
    now: datetime,
    gateway: PaymentGateway,
    coupons: CouponValidator | None = None,
    notifier: NotificationSender | None = None,
) -> ApprovalResult:
    req = _get_live(db, MembershipRequest, request_id, "Membership request")
    _require_pending(req, "approve", "approved")

    plan = db.get(MembershipPlan, plan_id)
    if not plan or plan.is_deleted:
        raise NotFoundError("Membership plan not found")
    ok, reason = plan.can_be_purchased()
    if not ok:
        raise ValidationError(reason, field="plan_id")

    original = float(plan.price)
    amount, discount, applied_code = _apply_coupon(
        coupons or DisabledCouponValidator(), coupon_code, original, req.phone, PaymentType.MEMBERSHIP.value
    )
    if payment_amount is not None:
        # admin override wins over the coupon
        amount = float(payment_amount)
        discount = max(0.0, original - amount)
    if amount < 0:
        raise ValidationError("Payment amount cannot be negative", field="payment_amount")

    payment, url = _issue_payment_link(
        db,
        req,
        payment_type=PaymentType.MEMBERSHIP_REQUEST,
        order_prefix="MR",
        title=f"Membership: {plan.name}",
        original_amount=original,
        amount=amount,
        discount=discount,
        coupon_code=applied_code,
        user_id=req.existing_user_id,
        email=None,
        metadata={
            "membership_request_id": req.id,
            "plan_id": plan.id,
            "plan_name": plan.name,
            "duration_in_days": plan.duration_in_days,
        },
        request_values={"approved_plan_id": plan.id, "admin_notes": admin_notes},
        admin_id=admin_id,
        now=now,
        gateway=gateway,
    )
    logger.info(
        "Membership request %s approved by admin %s (plan=%s, amount=%.2f, order=%s)",
        req.id, admin_id, plan.id, amount, payment.order_id,
    )

    notification = None
    if send_notification:
        notification = _notify(
            notifier, req.phone, None, amount, url, {"name": req.name, "item": plan.name}
        )
    return ApprovalResult(request=req, payment=payment, payment_url=url, notification=notification)


def reject_membership_request(db: Session, request_id: int, admin_id: int, reason: str, *, now: datetime):
    return _reject(db, MembershipRequest, request_id, admin_id, reason, now=now, label="Membership request")


def resend_payment_link(
    db: Session,
    request_id: int,
    *,
    notifier: NotificationSender,
) -> NotificationResult:
    req = _get_live(db, MembershipRequest, request_id, "Membership request")
    if req.status != RequestStatus.PAYMENT_SENT or not req.payment_url:
        raise InvalidStateError("Payment link can only be resent for requests awaiting payment")

    plan = db.get(MembershipPlan, req.approved_plan_id) if req.approved_plan_id else None
    context = {"name": req.name, "item": plan.name if plan else None}
    try:
        result = notifier.send_payment_link(req.phone, None, req.payment_amount or 0, req.payment_url, context)
    except NotificationError:
        raise
    except Exception as exc:
        raise NotificationError(f"Failed to resend payment link: {exc}") from exc

    if not result.sent:
        raise NotificationError(result.error or "Failed to resend payment link")
    logger.info("Payment link for request %s resent to %s", req.id, mask_phone(req.phone))
    return result


def list_membership_requests(
    db: Session,
    status: RequestStatus | str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[MembershipRequest]:
    q = db.query(MembershipRequest).filter(MembershipRequest.is_deleted.is_(False))
    if status:
        q = q.filter(MembershipRequest.status == RequestStatus(status).value)
    return q.order_by(MembershipRequest.created_at.desc()).offset(offset).limit(limit).all()


# ---------------------------
# service requests
# ---------------------------

def _load_services(db: Session, service_ids: list[int]) -> list[Service]:
    if not service_ids:
        raise ValidationError("At least one service must be selected", field="service_ids")

    services = []
    for service_id in dict.fromkeys(service_ids):
        service = db.get(Service, service_id)
        if not service:
            raise NotFoundError(f"Service {service_id} not found")
        ok, reason = service.can_be_purchased()
        if not ok:
            raise ValidationError(reason, field="service_ids")
        services.append(service)
    return services


def submit_service_request(
    db: Session,
    phone: str,
    name: str,
    service_ids: list[int],
    email: str | None = None,
    user_note: str | None = None,
    *,
    now: datetime,
    accounts: AccountLookup | None = None,
) -> ServiceRequest:
    phone = require_phone(phone)
    name = _clean_name(name)

    existing = (
        db.query(ServiceRequest)
        .filter(
            ServiceRequest.phone == phone,
            ServiceRequest.status == RequestStatus.PENDING.value,
            ServiceRequest.is_deleted.is_(False),
        )
        .first()
    )
    if existing:
        raise _pending_conflict(existing, "You already have a pending service request")

    services = _load_services(db, service_ids)
    user = (accounts or SqlAccountLookup(db)).find_by_phone(phone)

    req = ServiceRequest(
        phone=phone,
        name=name,
        email=email,
        user_id=user.id if user else None,
        services=[{"service_id": s.id, "service_name": s.name, "price": float(s.price)} for s in services],
        total_amount=sum(float(s.price) for s in services),
        user_note=user_note,
        created_at=now,
        updated_at=now,
    )
    db.add(req)
    db.commit()
    db.refresh(req)

    logger.info("Service request %s submitted by %s (%s)", req.id, mask_phone(phone), req.service_names())
    return req


def approve_service_request(
    db: Session,
    request_id: int,
    admin_id: int,
    payment_amount: float | None = None,
    admin_notes: str | None = None,
    send_notification: bool = True,
    *,
    now: datetime,
    gateway: PaymentGateway,
    notifier: NotificationSender | None = None,
) -> ApprovalResult:
    req = _get_live(db, ServiceRequest, request_id, "Service request")
    _require_pending(req, "approve", "approved")

    # availability may have changed since submission
    _load_services(db, [s["service_id"] for s in req.services])

    original = float(req.total_amount)
    amount = original if payment_amount is None else float(payment_amount)
    if amount < 0:
        raise ValidationError("Payment amount cannot be negative", field="payment_amount")

    payment, url = _issue_payment_link(
        db,
        req,
        payment_type=PaymentType.SERVICE_REQUEST,
        order_prefix="SR",
        title=f"Services: {req.service_names()}",
        original_amount=original,
        amount=amount,
        discount=max(0.0, original - amount),
        coupon_code=None,
        user_id=req.user_id,
        email=req.email,
        metadata={
            "service_request_id": req.id,
            "service_ids": [s["service_id"] for s in req.services],
        },
        request_values={"admin_notes": admin_notes},
        admin_id=admin_id,
        now=now,
        gateway=gateway,
    )
    logger.info("Service request %s approved by admin %s (order=%s)", req.id, admin_id, payment.order_id)

    notification = None
    if send_notification:
        notification = _notify(
            notifier, req.phone, req.email, amount, url, {"name": req.name, "item": req.service_names()}
        )
    return ApprovalResult(request=req, payment=payment, payment_url=url, notification=notification)


def reject_service_request(db: Session, request_id: int, admin_id: int, reason: str, *, now: datetime):
    return _reject(db, ServiceRequest, request_id, admin_id, reason, now=now, label="Service request")


def list_service_requests(
    db: Session,
    status: RequestStatus | str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ServiceRequest]:
    q = db.query(ServiceRequest).filter(ServiceRequest.is_deleted.is_(False))
    if status:
        q = q.filter(ServiceRequest.status == RequestStatus(status).value)
    return q.order_by(ServiceRequest.created_at.desc()).offset(offset).limit(limit).all()


# ---------------------------
# club join requests
# ---------------------------

def _get_club(db: Session, club_id: int) -> Club:
    club = db.get(Club, club_id)
    if not club or club.is_deleted:
        raise NotFoundError("Club not found")
    return club


def _is_member(db: Session, club_id: int, user_id: int) -> bool:
    return (
        db.query(ClubMember.id)
        .filter(ClubMember.club_id == club_id, ClubMember.user_id == user_id)
        .first()
        is not None
    )


def _add_member(db: Session, club_id: int, user_id: int, reviewed_by: int | None, now: datetime) -> ClubMember:
    member = ClubMember(club_id=club_id, user_id=user_id, reviewed_by=reviewed_by, created_at=now, updated_at=now)
    db.add(member)
    db.execute(
        update(Club)
        .where(Club.id == club_id)
        .values(member_count=Club.member_count + 1)
        .execution_options(synchronize_session=False)
    )
    return member


def submit_club_join_request(
    db: Session,
    user_id: int,
    club_id: int,
    user_note: str | None = None,
    *,
    now: datetime,
) -> ClubJoinOutcome:
    club = _get_club(db, club_id)
    if _is_member(db, club_id, user_id):
        raise ConflictError("You are already a member of this club")

    if not club.requires_approval:
        member = _add_member(db, club_id, user_id, None, now)
        db.commit()
        db.refresh(member)
        logger.info("User %s joined club %s", user_id, club_id)
        return ClubJoinOutcome(joined=True, member=member)

    existing = (
        db.query(ClubJoinRequest)
        .filter(
            ClubJoinRequest.user_id == user_id,
            ClubJoinRequest.club_id == club_id,
            ClubJoinRequest.status == RequestStatus.PENDING.value,
        )
        .first()
    )
    if existing:
        raise _pending_conflict(existing, "You already have a pending request to join this club")

    req = ClubJoinRequest(user_id=user_id, club_id=club_id, user_note=user_note, created_at=now, updated_at=now)
    db.add(req)
    db.commit()
    db.refresh(req)
    logger.info("Club join request %s submitted by user %s for club %s", req.id, user_id, club_id)
    return ClubJoinOutcome(joined=False, request=req)


def approve_club_join_request(
    db: Session,
    request_id: int,
    admin_id: int,
    admin_notes: str | None = None,
    *,
    now: datetime,
) -> ClubJoinRequest:
    req = _get_live(db, ClubJoinRequest, request_id, "Club join request")
    _require_pending(req, "approve", "approved")
    _get_club(db, req.club_id)

    moved = _transition(
        db,
        req,
        RequestStatus.PENDING.value,
        {
            "status": RequestStatus.APPROVED.value,
            "reviewed_by": admin_id,
            "reviewed_at": now,
            "admin_notes": admin_notes,
            "updated_at": now,
        },
        commit=False,
    )
    if not moved:
        db.rollback()
        raise InvalidStateError("Request was already reviewed by someone else")

    if not _is_member(db, req.club_id, req.user_id):
        _add_member(db, req.club_id, req.user_id, admin_id, now)
    db.commit()

    logger.info("Club join request %s approved by admin %s", req.id, admin_id)
    return req


def reject_club_join_request(db: Session, request_id: int, admin_id: int, reason: str, *, now: datetime):
    return _reject(db, ClubJoinRequest, request_id, admin_id, reason, now=now, label="Club join request")


def get_pending_counts(db: Session) -> dict[str, int]:
    def _count(model, *criteria) -> int:
        return db.query(func.count(model.id)).filter(model.status == RequestStatus.PENDING.value, *criteria).scalar()

    return {
        "membership_requests": _count(MembershipRequest, MembershipRequest.is_deleted.is_(False)),
        "service_requests": _count(ServiceRequest, ServiceRequest.is_deleted.is_(False)),
        "club_join_requests": _count(ClubJoinRequest),
    }
