from datetime import timedelta

import pytest

from memberhub.core.errors import (
    ConflictError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    NotificationError,
    ValidationError,
)
from memberhub.models.club import Club, ClubMember
from memberhub.models.entitlement import PurchaseMethod
from memberhub.models.payment import Payment, PaymentType
from memberhub.models.requests import MembershipRequest, RequestStatus
from memberhub.services import approvals, entitlements
from tests.conftest import NOW, PHONE


def submit(db, **kwargs) -> MembershipRequest:
    kwargs.setdefault("now", NOW)
    return approvals.submit_membership_request(db, PHONE, "  asha RAO ", **kwargs)


def approve(db, req, plan, gateway, **kwargs):
    kwargs.setdefault("now", NOW)
    return approvals.approve_membership_request(db, req.id, 1, plan.id, gateway=gateway, **kwargs)


# ---------------------------
# membership requests
# ---------------------------

def test_submit_normalizes_phone_and_name(db, plan, user):
    req = approvals.submit_membership_request(db, "+91 80858-16197", "  asha RAO ", plan.id, now=NOW)

    assert req.phone == PHONE
    assert req.name == "Asha Rao"
    assert req.status == RequestStatus.PENDING
    assert req.existing_user_id == user.id


def test_submit_rejects_short_name(db):
    with pytest.raises(ValidationError):
        approvals.submit_membership_request(db, PHONE, " a ", now=NOW)


def test_duplicate_pending_request_is_a_conflict(db):
    first = submit(db)

    with pytest.raises(ConflictError) as exc:
        submit(db)

    assert exc.value.details["existingRequestId"] == first.id
    assert exc.value.details["canWithdraw"] is True
    assert exc.value.details["submittedAt"].startswith("2025-01-15T12:00:00")


def test_submit_blocked_by_active_membership(db, plan):
    entitlements.create_membership(db, plan, PHONE, 499.0, PurchaseMethod.ADMIN, now=NOW - timedelta(days=10))

    with pytest.raises(ConflictError, match="20 days remaining"):
        submit(db)


def test_submit_blocked_by_lifetime_membership(db, lifetime_plan):
    entitlements.create_membership(db, lifetime_plan, PHONE, 9999.0, PurchaseMethod.ADMIN, now=NOW)

    with pytest.raises(ConflictError, match="lifetime"):
        submit(db)


def test_submit_allowed_after_membership_expired(db, plan):
    entitlements.create_membership(db, plan, PHONE, 499.0, PurchaseMethod.ADMIN, now=NOW - timedelta(days=31))

    assert submit(db).status == RequestStatus.PENDING


def test_submit_with_unknown_plan(db):
    with pytest.raises(NotFoundError):
        submit(db, requested_plan_id=999)


def test_submit_validates_coupon(db, plan, coupons):
    with pytest.raises(ValidationError, match="Coupon"):
        submit(db, requested_plan_id=plan.id, coupon_code="NOPE", coupons=coupons)

    req = submit(db, requested_plan_id=plan.id, coupon_code="HALF", coupons=coupons)
    assert req.coupon_code == "HALF"


def test_withdraw_then_resubmit(db):
    first = submit(db)

    approvals.withdraw_membership_request(db, first.id, PHONE, now=NOW)
    db.refresh(first)
    assert first.is_deleted

    second = submit(db)
    assert second.id != first.id


def test_withdraw_requires_matching_phone(db):
    req = submit(db)

    with pytest.raises(NotFoundError):
        approvals.withdraw_membership_request(db, req.id, "9999999999", now=NOW)


def test_withdraw_only_pending(db, plan, gateway):
    req = submit(db)
    approve(db, req, plan, gateway)

    with pytest.raises(InvalidStateError):
        approvals.withdraw_membership_request(db, req.id, PHONE, now=NOW)


def test_approve_issues_payment_link(db, plan, gateway, notifier):
    req = submit(db)

    result = approve(db, req, plan, gateway, notifier=notifier, admin_notes="ok")

    db.refresh(req)
    assert req.status == RequestStatus.PAYMENT_SENT
    assert req.approved_plan_id == plan.id
    assert req.reviewed_by == 1
    assert req.payment_url == result.payment_url == "https://pay.test/l/1"
    assert req.order_id == result.payment.order_id
    assert result.payment.order_id.startswith("MR_")
    assert result.payment.type == PaymentType.MEMBERSHIP_REQUEST
    assert result.payment.final_amount == 499.0
    assert result.payment.meta["membership_request_id"] == req.id

    link = gateway.links[0]
    assert link["amount_minor"] == 49900
    assert link["expires_at"] == NOW + timedelta(days=7)
    assert link["customer"].phone == PHONE

    assert result.notification.sent
    assert notifier.sent[0]["link"] == "https://pay.test/l/1"


def test_approve_with_coupon(db, plan, gateway, coupons):
    req = submit(db)

    result = approve(db, req, plan, gateway, coupon_code="HALF", coupons=coupons)

    assert result.payment.final_amount == 249.5
    assert result.payment.discount_amount == 249.5
    assert result.payment.coupon_code == "HALF"


def test_approve_amount_override_wins(db, plan, gateway, coupons):
    req = submit(db)

    result = approve(db, req, plan, gateway, payment_amount=100, coupon_code="HALF", coupons=coupons)

    assert result.payment.final_amount == 100
    assert result.payment.discount_amount == 399
    assert gateway.links[0]["amount_minor"] == 10000


def test_gateway_failure_leaves_request_pending(db, plan, gateway):
    req = submit(db)
    gateway.fail = True

    with pytest.raises(ExternalServiceError):
        approve(db, req, plan, gateway)

    db.refresh(req)
    assert req.status == RequestStatus.PENDING
    assert req.order_id is None
    assert db.query(Payment).count() == 0


def test_notification_failure_does_not_fail_approval(db, plan, gateway, notifier):
    req = submit(db)
    notifier.fail = True

    result = approve(db, req, plan, gateway, notifier=notifier)

    db.refresh(req)
    assert req.status == RequestStatus.PAYMENT_SENT
    assert result.notification.sent is False
    assert "WhatsApp is down" in result.notification.error


def test_approve_twice_is_rejected(db, plan, gateway):
    req = submit(db)
    approve(db, req, plan, gateway)

    with pytest.raises(InvalidStateError, match="Only PENDING requests can be approved"):
        approve(db, req, plan, gateway)
    assert len(gateway.links) == 1


def test_reject_requires_reason(db):
    req = submit(db)

    with pytest.raises(ValidationError):
        approvals.reject_membership_request(db, req.id, 1, "   ", now=NOW)

    approvals.reject_membership_request(db, req.id, 1, "Incomplete profile", now=NOW)
    db.refresh(req)
    assert req.status == RequestStatus.REJECTED
    assert req.rejection_reason == "Incomplete profile"

    with pytest.raises(InvalidStateError, match="rejected"):
        approvals.reject_membership_request(db, req.id, 1, "again", now=NOW)


def test_resend_payment_link(db, plan, gateway, notifier):
    req = submit(db)
    with pytest.raises(InvalidStateError):
        approvals.resend_payment_link(db, req.id, notifier=notifier)

    approve(db, req, plan, gateway, send_notification=False, notifier=notifier)
    assert notifier.sent == []

    result = approvals.resend_payment_link(db, req.id, notifier=notifier)
    assert result.sent
    assert notifier.sent[0]["context"]["item"] == "Monthly"

    notifier.fail = True
    with pytest.raises(NotificationError):
        approvals.resend_payment_link(db, req.id, notifier=notifier)


def test_list_membership_requests_filters_status(db, plan, gateway):
    req = submit(db)
    approve(db, req, plan, gateway)
    approvals.submit_membership_request(db, "9876543210", "Ravi", now=NOW)

    assert len(approvals.list_membership_requests(db)) == 2
    pending = approvals.list_membership_requests(db, status="PENDING")
    assert [r.phone for r in pending] == ["9876543210"]


# ---------------------------
# service requests
# ---------------------------

def test_service_request_totals_selected_services(db, service, lifetime_service):
    req = approvals.submit_service_request(
        db, PHONE, "Asha", [service.id, lifetime_service.id, service.id], email="a@example.com", now=NOW
    )

    assert [s["service_id"] for s in req.services] == [service.id, lifetime_service.id]
    assert req.total_amount == 1500.0
    assert req.service_names() == "Coaching, Library"


def test_service_request_needs_services(db):
    with pytest.raises(ValidationError):
        approvals.submit_service_request(db, PHONE, "Asha", [], now=NOW)


def test_service_request_full_service(db, service):
    service.max_subscriptions = 0
    db.commit()

    with pytest.raises(ValidationError, match="no available slots"):
        approvals.submit_service_request(db, PHONE, "Asha", [service.id], now=NOW)


def test_duplicate_pending_service_request(db, service):
    approvals.submit_service_request(db, PHONE, "Asha", [service.id], now=NOW)

    with pytest.raises(ConflictError):
        approvals.submit_service_request(db, PHONE, "Asha", [service.id], now=NOW)


def test_approve_service_request(db, service, gateway, notifier):
    req = approvals.submit_service_request(db, PHONE, "Asha", [service.id], email="a@example.com", now=NOW)

    result = approvals.approve_service_request(db, req.id, 1, gateway=gateway, notifier=notifier, now=NOW)

    db.refresh(req)
    assert req.status == RequestStatus.PAYMENT_SENT
    assert result.payment.type == PaymentType.SERVICE_REQUEST
    assert result.payment.order_id.startswith("SR_")
    assert result.payment.meta["service_ids"] == [service.id]
    assert notifier.sent[0]["email"] == "a@example.com"


def test_reject_service_request(db, service):
    req = approvals.submit_service_request(db, PHONE, "Asha", [service.id], now=NOW)

    approvals.reject_service_request(db, req.id, 1, "Fully booked", now=NOW)
    db.refresh(req)
    assert req.status == RequestStatus.REJECTED
    assert approvals.list_service_requests(db, status="REJECTED")[0].id == req.id


# ---------------------------
# clubs
# ---------------------------

def test_open_club_joins_directly(db, user):
    club = Club(name="Runners", requires_approval=False)
    db.add(club)
    db.commit()

    outcome = approvals.submit_club_join_request(db, user.id, club.id, now=NOW)

    assert outcome.joined
    db.refresh(club)
    assert club.member_count == 1

    with pytest.raises(ConflictError, match="already a member"):
        approvals.submit_club_join_request(db, user.id, club.id, now=NOW)


def test_club_join_needs_approval(db, user, club):
    outcome = approvals.submit_club_join_request(db, user.id, club.id, "hi", now=NOW)

    assert not outcome.joined
    assert outcome.request.status == RequestStatus.PENDING

    with pytest.raises(ConflictError) as exc:
        approvals.submit_club_join_request(db, user.id, club.id, now=NOW)
    assert exc.value.details["existingRequestId"] == outcome.request.id

    approvals.approve_club_join_request(db, outcome.request.id, 1, now=NOW)

    db.refresh(club)
    assert club.member_count == 1
    assert db.query(ClubMember).filter_by(club_id=club.id, user_id=user.id).count() == 1


def test_reject_club_join_request(db, user, club):
    outcome = approvals.submit_club_join_request(db, user.id, club.id, now=NOW)

    req = approvals.reject_club_join_request(db, outcome.request.id, 1, "Members only", now=NOW)
    db.refresh(req)
    assert req.status == RequestStatus.REJECTED


def test_pending_counts(db, user, club, service):
    submit(db)
    approvals.submit_service_request(db, "9876543210", "Ravi", [service.id], now=NOW)
    approvals.submit_club_join_request(db, user.id, club.id, now=NOW)

    assert approvals.get_pending_counts(db) == {
        "membership_requests": 1,
        "service_requests": 1,
        "club_join_requests": 1,
    }
