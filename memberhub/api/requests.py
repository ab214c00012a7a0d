from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from memberhub.api.deps import get_coupon_validator, get_current_admin, get_gateway, get_notifier, get_now
from memberhub.db.session import get_db
from memberhub.integrations.coupons import CouponValidator
from memberhub.integrations.gateway import PaymentGateway
from memberhub.integrations.notifications import NotificationSender
from memberhub.models.requests import RequestStatus
from memberhub.models.user import Admin
from memberhub.schemas.requests import (
    ApprovalOut,
    ApproveMembershipIn,
    ApproveServiceIn,
    MembershipRequestIn,
    MembershipRequestOut,
    PendingCountsOut,
    RejectIn,
    ServiceRequestIn,
    ServiceRequestOut,
    WithdrawIn,
)
from memberhub.services import approvals

public_router = APIRouter(tags=["requests"])
admin_router = APIRouter(prefix="/admin", tags=["requests"])


def _approval_out(result: approvals.ApprovalResult) -> ApprovalOut:
    return ApprovalOut(
        request_id=result.request.id,
        status=result.request.status,
        order_id=result.payment.order_id,
        payment_url=result.payment_url,
        amount=float(result.payment.final_amount),
        notification_sent=bool(result.notification and result.notification.sent),
    )


# ---------------------------
# membership requests
# ---------------------------

@public_router.post("/membership-requests", response_model=MembershipRequestOut, status_code=201)
def submit_membership_request(
    payload: MembershipRequestIn,
    db: Session = Depends(get_db),
    coupons: CouponValidator = Depends(get_coupon_validator),
    now: datetime = Depends(get_now),
):
    return approvals.submit_membership_request(
        db, payload.phone, payload.name, payload.requested_plan_id, payload.coupon_code, now=now, coupons=coupons,
    )


@public_router.post("/membership-requests/{request_id}/withdraw", response_model=MembershipRequestOut)
def withdraw_membership_request(
    request_id: int,
    payload: WithdrawIn,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return approvals.withdraw_membership_request(db, request_id, payload.phone, now=now)


@admin_router.get("/membership-requests", response_model=list[MembershipRequestOut])
def list_membership_requests(
    status: RequestStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
):
    return approvals.list_membership_requests(db, status, limit, offset)


@admin_router.get("/membership-requests/pending-counts", response_model=PendingCountsOut)
def pending_counts(db: Session = Depends(get_db), admin: Admin = Depends(get_current_admin)):
    return PendingCountsOut(**approvals.get_pending_counts(db))


@admin_router.post("/membership-requests/{request_id}/approve", response_model=ApprovalOut)
def approve_membership_request(
    request_id: int,
    payload: ApproveMembershipIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    gateway: PaymentGateway = Depends(get_gateway),
    coupons: CouponValidator = Depends(get_coupon_validator),
    notifier: NotificationSender = Depends(get_notifier),
    now: datetime = Depends(get_now),
):
    result = approvals.approve_membership_request(
        db,
        request_id,
        admin.id,
        payload.plan_id,
        payload.payment_amount,
        payload.coupon_code,
        payload.admin_notes,
        payload.send_notification,
        now=now,
        gateway=gateway,
        coupons=coupons,
        notifier=notifier,
    )
    return _approval_out(result)


@admin_router.post("/membership-requests/{request_id}/reject", response_model=MembershipRequestOut)
def reject_membership_request(
    request_id: int,
    payload: RejectIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    return approvals.reject_membership_request(db, request_id, admin.id, payload.reason, now=now)


@admin_router.post("/membership-requests/{request_id}/resend-link")
def resend_payment_link(
    request_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    notifier: NotificationSender = Depends(get_notifier),
):
    result = approvals.resend_payment_link(db, request_id, notifier=notifier)
    return {"ok": True, "channel": result.channel}


# ---------------------------
# service requests
# ---------------------------

@public_router.post("/service-requests", response_model=ServiceRequestOut, status_code=201)
def submit_service_request(
    payload: ServiceRequestIn,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return approvals.submit_service_request(
        db, payload.phone, payload.name, payload.service_ids, payload.email, payload.user_note, now=now,
    )


@admin_router.get("/service-requests", response_model=list[ServiceRequestOut])
def list_service_requests(
    status: RequestStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
):
    return approvals.list_service_requests(db, status, limit, offset)


@admin_router.post("/service-requests/{request_id}/approve", response_model=ApprovalOut)
def approve_service_request(
    request_id: int,
    payload: ApproveServiceIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationSender = Depends(get_notifier),
    now: datetime = Depends(get_now),
):
    result = approvals.approve_service_request(
        db,
        request_id,
        admin.id,
        payload.payment_amount,
        payload.admin_notes,
        payload.send_notification,
        now=now,
        gateway=gateway,
        notifier=notifier,
    )
    return _approval_out(result)


@admin_router.post("/service-requests/{request_id}/reject", response_model=ServiceRequestOut)
def reject_service_request(
    request_id: int,
    payload: RejectIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    return approvals.reject_service_request(db, request_id, admin.id, payload.reason, now=now)
