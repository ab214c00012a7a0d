from datetime import timedelta

import pytest

from memberhub.core.errors import ConflictError, InvalidStateError, ValidationError
from memberhub.models.entitlement import DisplayStatus, EntitlementStatus, PaymentStatus, PurchaseMethod
from memberhub.models.membership import UserMembership
from memberhub.models.plan import MembershipPlan, Service
from memberhub.models.subscription import UserServiceSubscription
from memberhub.services import entitlements
from memberhub.utils.dt import as_utc_aware
from tests.conftest import NOW, PHONE


def grant(db, plan, now=NOW, method=PurchaseMethod.ADMIN, **kwargs) -> UserMembership:
    return entitlements.create_membership(db, plan, PHONE, float(plan.price), method, now=now, **kwargs)


def purchases(db, plan) -> int:
    db.expire_all()
    return db.get(MembershipPlan, plan.id).current_purchases


# ---------------------------
# creation
# ---------------------------

def test_admin_grant_is_active_and_paid(db, plan):
    m = grant(db, plan)

    assert m.status == EntitlementStatus.ACTIVE
    assert m.payment_status == PaymentStatus.SUCCESS
    assert as_utc_aware(m.end_date) == NOW + timedelta(days=30)
    assert m.plan_snapshot["name"] == "Monthly"
    assert m.plan_snapshot["perks"] == ["events"]
    assert purchases(db, plan) == 1


def test_in_app_purchase_is_optimistic_but_not_active(db, plan):
    m = grant(db, plan, method=PurchaseMethod.IN_APP)

    assert m.status == EntitlementStatus.ACTIVE
    assert m.payment_status == PaymentStatus.PENDING
    assert not m.is_currently_active(NOW)
    assert entitlements.find_active_entitlement(db, UserMembership, PHONE, now=NOW) is None


def test_lifetime_plan_has_no_end_date(db, lifetime_plan):
    m = grant(db, lifetime_plan)

    assert m.is_lifetime
    assert m.end_date is None
    assert entitlements.is_currently_active(db, UserMembership, PHONE, now=NOW + timedelta(days=5000))


def test_snapshot_survives_plan_edits(db, plan):
    m = grant(db, plan)
    plan.name = "Renamed"
    db.commit()

    db.refresh(m)
    assert m.plan_snapshot["name"] == "Monthly"


def test_create_links_existing_account(db, plan, user):
    m = entitlements.create_membership(db, plan, "+91 80858 16197", 499.0, PurchaseMethod.ADMIN, now=NOW)
    assert m.user_id == user.id
    assert m.phone == PHONE


def test_create_rejects_negative_amount(db, plan):
    with pytest.raises(ValidationError):
        entitlements.create_membership(db, plan, PHONE, -1, PurchaseMethod.ADMIN, now=NOW)


def test_create_rejects_unavailable_plan(db, plan):
    plan.is_active = False
    db.commit()

    with pytest.raises(ValidationError):
        grant(db, plan)


def test_create_rejects_plan_at_purchase_limit(db, plan):
    plan.max_purchases = 1
    db.commit()
    grant(db, plan)

    db.refresh(plan)
    with pytest.raises(ValidationError, match="limit"):
        grant(db, plan)


def test_duplicate_order_id_is_a_conflict(db, plan):
    grant(db, plan, order_id="order_dup")

    with pytest.raises(ConflictError):
        grant(db, plan, order_id="order_dup")
    assert purchases(db, plan) == 1


def test_created_with_formatted_phone_found_with_plain_phone(db, plan):
    entitlements.create_membership(db, plan, " +91-8085816197", 499.0, PurchaseMethod.ADMIN, now=NOW)

    found = entitlements.find_active_entitlement(db, UserMembership, "8085816197", now=NOW)
    assert found is not None
    assert found.phone == PHONE


# ---------------------------
# payment confirmation
# ---------------------------

def test_confirm_payment_activates(db, plan, user):
    m = grant(db, plan, method=PurchaseMethod.IN_APP, user_id=None, accounts=_NoAccounts())

    assert entitlements.confirm_payment(db, m, "pay_1", user.id, now=NOW)
    assert m.payment_status == PaymentStatus.SUCCESS
    assert m.payment_id == "pay_1"
    assert m.user_id == user.id
    assert m.is_currently_active(NOW)


def test_confirm_payment_twice_is_a_noop(db, plan):
    m = grant(db, plan, method=PurchaseMethod.IN_APP)

    assert entitlements.confirm_payment(db, m, "pay_1", now=NOW)
    first = (m.status, m.payment_status, m.payment_id, as_utc_aware(m.updated_at))

    assert not entitlements.confirm_payment(db, m, "pay_1", now=NOW + timedelta(minutes=5))
    assert (m.status, m.payment_status, m.payment_id, as_utc_aware(m.updated_at)) == first
    assert purchases(db, plan) == 1


def test_late_confirmation_for_deleted_membership_is_ignored(db, plan):
    m = grant(db, plan, method=PurchaseMethod.IN_APP)
    entitlements.soft_delete(db, m, actor_id=1, now=NOW)

    assert not entitlements.confirm_payment(db, m, "pay_1", now=NOW)
    assert m.status == EntitlementStatus.CANCELLED
    assert m.payment_status == PaymentStatus.PENDING


def test_payment_failure_keeps_membership_retryable(db, plan):
    m = grant(db, plan, method=PurchaseMethod.IN_APP)

    assert entitlements.mark_payment_failed(db, m, "card declined", now=NOW)
    assert m.status == EntitlementStatus.ACTIVE
    assert m.payment_status == PaymentStatus.FAILED
    assert m.cancelled_at is None
    assert not m.is_currently_active(NOW)
    assert m.current_status(NOW) == DisplayStatus.PENDING
    assert purchases(db, plan) == 0

    # a second failure for the same attempt changes nothing
    assert not entitlements.mark_payment_failed(db, m, "card declined", now=NOW)
    assert purchases(db, plan) == 0

    assert entitlements.confirm_payment(db, m, "pay_retry", now=NOW)
    assert m.payment_status == PaymentStatus.SUCCESS
    assert m.payment_id == "pay_retry"
    assert entitlements.is_currently_active(db, UserMembership, PHONE, now=NOW)
    assert purchases(db, plan) == 1


def test_payment_failure_keeps_subscription_slot(db, service):
    s = entitlements.create_subscription(
        db, service, PHONE, 1000.0, now=NOW, purchase_method=PurchaseMethod.IN_APP, payment_confirmed=False,
    )

    entitlements.mark_payment_failed(db, s, now=NOW)
    db.expire_all()
    svc = db.get(Service, service.id)
    assert (svc.total_subscription_count, svc.active_subscription_count) == (0, 1)
    assert entitlements.reconcile_purchase_counts(db) == {"membership_plans": 0, "services": 0}

    entitlements.confirm_payment(db, s, "pay_retry", now=NOW)
    db.expire_all()
    svc = db.get(Service, service.id)
    assert (svc.total_subscription_count, svc.active_subscription_count) == (1, 1)


def test_refund_after_failed_payment_does_not_uncount_twice(db, plan):
    grant(db, plan)
    failed = grant(db, plan, method=PurchaseMethod.IN_APP)
    entitlements.mark_payment_failed(db, failed, now=NOW)
    assert purchases(db, plan) == 1

    assert entitlements.mark_refunded(db, failed, now=NOW)
    assert purchases(db, plan) == 1


# ---------------------------
# cancel / refund
# ---------------------------

def test_cancel_sets_cancellation_triple(db, plan):
    m = grant(db, plan)
    entitlements.cancel(db, m, actor_id=7, reason="asked", now=NOW)

    assert m.status == EntitlementStatus.CANCELLED
    assert m.cancelled_by == 7
    assert m.cancellation_reason == "asked"
    assert as_utc_aware(m.cancelled_at) == NOW


@pytest.mark.parametrize("terminal", ["cancel", "refund"])
def test_cancel_terminal_is_rejected(db, plan, terminal):
    m = grant(db, plan)
    if terminal == "cancel":
        entitlements.cancel(db, m, actor_id=1, now=NOW)
    else:
        entitlements.mark_refunded(db, m, now=NOW)

    with pytest.raises(InvalidStateError):
        entitlements.cancel(db, m, actor_id=1, now=NOW)


def test_refund_decrements_counter_once(db, plan):
    m = grant(db, plan)
    assert purchases(db, plan) == 1

    assert entitlements.mark_refunded(db, m, now=NOW)
    assert not entitlements.mark_refunded(db, m, now=NOW)

    assert m.status == EntitlementStatus.REFUNDED
    assert m.payment_status == PaymentStatus.REFUNDED
    assert m.cancellation_reason == "Payment refunded"
    assert purchases(db, plan) == 0


def test_counter_never_goes_negative(db, plan):
    m = grant(db, plan)
    plan.current_purchases = 0
    db.commit()

    entitlements.mark_refunded(db, m, now=NOW)
    assert purchases(db, plan) == 0


# ---------------------------
# extend
# ---------------------------

def test_extend_keeps_time_of_day(db, plan):
    m = grant(db, plan)
    before = as_utc_aware(m.end_date)

    entitlements.extend(db, m, 10, now=NOW)
    assert as_utc_aware(m.end_date) == before + timedelta(days=10)


@pytest.mark.parametrize("days", [0, -5, 1.5, True])
def test_extend_requires_positive_whole_days(db, plan, days):
    m = grant(db, plan)
    before = as_utc_aware(m.end_date)

    with pytest.raises(ValidationError):
        entitlements.extend(db, m, days, now=NOW)
    assert as_utc_aware(m.end_date) == before


def test_extend_is_monotonic(db, plan):
    m = grant(db, plan)
    ends = [as_utc_aware(m.end_date)]
    for days in (1, 7, 30):
        entitlements.extend(db, m, days, now=NOW)
        ends.append(as_utc_aware(m.end_date))

    assert ends == sorted(ends)
    assert ends[-1] == ends[0] + timedelta(days=38)


def test_extend_rejected_for_cancelled(db, plan):
    m = grant(db, plan)
    entitlements.cancel(db, m, actor_id=1, now=NOW)

    with pytest.raises(InvalidStateError):
        entitlements.extend(db, m, 5, now=NOW)


def test_extend_rejected_for_lifetime(db, lifetime_plan):
    m = grant(db, lifetime_plan)

    with pytest.raises(ValidationError):
        entitlements.extend(db, m, 5, now=NOW)


def test_extend_reactivates_swept_membership(db, plan):
    m = grant(db, plan, now=NOW - timedelta(days=31))
    entitlements.auto_expire_sweep(db, UserMembership, now=NOW)
    db.refresh(m)
    assert m.status == EntitlementStatus.EXPIRED

    entitlements.extend(db, m, 10, now=NOW)
    assert m.status == EntitlementStatus.ACTIVE
    assert m.is_currently_active(NOW)


# ---------------------------
# soft delete / restore
# ---------------------------

def test_soft_delete_active_membership_cancels_it(db, plan):
    """The production incident: a deleted membership kept granting access."""
    m = grant(db, plan)
    assert entitlements.find_active_entitlement(db, UserMembership, PHONE, now=NOW) is not None

    entitlements.soft_delete(db, m, actor_id=42, now=NOW)

    assert m.is_deleted
    assert m.deleted_by == 42
    assert m.status == EntitlementStatus.CANCELLED
    assert m.cancellation_reason == "Deleted by admin"
    assert entitlements.find_active_entitlement(db, UserMembership, PHONE, now=NOW) is None


def _put_in_status(db, m, status):
    if status == EntitlementStatus.PENDING:
        db.query(UserMembership).filter_by(id=m.id).update({"status": status.value})
        db.commit()
    elif status == EntitlementStatus.EXPIRED:
        db.query(UserMembership).filter_by(id=m.id).update({"status": status.value, "end_date": NOW})
        db.commit()
    elif status == EntitlementStatus.CANCELLED:
        entitlements.cancel(db, m, actor_id=1, reason="manual", now=NOW)
    elif status == EntitlementStatus.REFUNDED:
        entitlements.mark_refunded(db, m, now=NOW)
    db.refresh(m)


@pytest.mark.parametrize(
    "status, expected",
    [
        (EntitlementStatus.PENDING, EntitlementStatus.CANCELLED),
        (EntitlementStatus.ACTIVE, EntitlementStatus.CANCELLED),
        (EntitlementStatus.EXPIRED, EntitlementStatus.EXPIRED),
        (EntitlementStatus.CANCELLED, EntitlementStatus.CANCELLED),
        (EntitlementStatus.REFUNDED, EntitlementStatus.REFUNDED),
    ],
)
def test_soft_delete_never_leaves_a_live_status(db, plan, status, expected):
    m = grant(db, plan)
    _put_in_status(db, m, status)
    reason_before = m.cancellation_reason

    entitlements.soft_delete(db, m, actor_id=1, now=NOW)

    assert m.is_deleted
    assert m.status == expected
    assert m.status not in (EntitlementStatus.PENDING, EntitlementStatus.ACTIVE)
    if status not in (EntitlementStatus.PENDING, EntitlementStatus.ACTIVE):
        assert m.cancellation_reason == reason_before


def test_soft_delete_twice_is_rejected(db, plan):
    m = grant(db, plan)
    entitlements.soft_delete(db, m, actor_id=1, now=NOW)

    with pytest.raises(InvalidStateError):
        entitlements.soft_delete(db, m, actor_id=1, now=NOW)


def test_restore_does_not_reactivate(db, plan):
    m = grant(db, plan)
    entitlements.soft_delete(db, m, actor_id=1, now=NOW)

    entitlements.restore(db, m)

    assert not m.is_deleted
    assert m.deleted_at is None
    assert m.status == EntitlementStatus.CANCELLED
    assert m.current_status(NOW) == DisplayStatus.CANCELLED
    assert entitlements.find_active_entitlement(db, UserMembership, PHONE, now=NOW) is None


def test_restore_requires_deleted(db, plan):
    m = grant(db, plan)
    with pytest.raises(InvalidStateError):
        entitlements.restore(db, m)


def test_permanent_delete_only_after_soft_delete(db, plan):
    m = grant(db, plan)
    with pytest.raises(InvalidStateError):
        entitlements.permanent_delete(db, m)

    entitlements.soft_delete(db, m, actor_id=1, now=NOW)
    m_id = m.id
    entitlements.permanent_delete(db, m)

    assert db.get(UserMembership, m_id) is None


# ---------------------------
# lookup / expiry
# ---------------------------

def test_find_active_prefers_lifetime_then_latest_end(db, plan, lifetime_plan):
    short = grant(db, plan)
    longer = grant(db, plan, now=NOW + timedelta(days=1))

    found = entitlements.find_active_entitlement(db, UserMembership, PHONE, now=NOW + timedelta(days=2))
    assert found.id == longer.id
    assert found.id != short.id

    forever = grant(db, lifetime_plan)
    found = entitlements.find_active_entitlement(db, UserMembership, PHONE, now=NOW + timedelta(days=2))
    assert found.id == forever.id


def test_boundary_end_equals_now(db, plan):
    m = grant(db, plan)
    end = as_utc_aware(m.end_date)

    assert not entitlements.is_currently_active(db, UserMembership, PHONE, now=end)
    assert m.is_expired(end)
    assert not m.is_currently_active(end)
    assert entitlements.auto_expire_sweep(db, UserMembership, now=end) == 1


def test_lazy_expiry_without_sweep(db, plan):
    m = grant(db, plan, now=NOW - timedelta(days=31))

    assert not entitlements.is_currently_active(db, UserMembership, PHONE, now=NOW)
    assert entitlements.get_current_status(m, NOW) == DisplayStatus.EXPIRED
    assert m.status == EntitlementStatus.ACTIVE

    assert entitlements.auto_expire_sweep(db, UserMembership, now=NOW) == 1
    db.refresh(m)
    assert m.status == "EXPIRED"

    # idempotent
    assert entitlements.auto_expire_sweep(db, UserMembership, now=NOW) == 0


def test_sweep_skips_pending_deleted_and_lifetime(db, plan, lifetime_plan):
    past = NOW - timedelta(days=40)
    pending = grant(db, plan, now=past, method=PurchaseMethod.IN_APP)
    deleted = grant(db, plan, now=past)
    entitlements.soft_delete(db, deleted, actor_id=1, now=past)
    forever = grant(db, lifetime_plan, now=past)

    assert entitlements.auto_expire_sweep(db, UserMembership, now=NOW) == 0
    for m in (pending, deleted, forever):
        db.refresh(m)
        assert m.status != EntitlementStatus.EXPIRED


def test_sweep_does_not_touch_cancelled(db, plan):
    m = grant(db, plan, now=NOW - timedelta(days=31))
    entitlements.cancel(db, m, actor_id=1, now=NOW)

    assert entitlements.auto_expire_sweep(db, UserMembership, now=NOW) == 0
    assert m.status == EntitlementStatus.CANCELLED


def test_find_expiring_soon(db, plan, lifetime_plan):
    soon = grant(db, plan, now=NOW - timedelta(days=25))
    grant(db, plan)
    grant(db, lifetime_plan)

    rows = entitlements.find_expiring_soon(db, UserMembership, 7, now=NOW)
    assert [m.id for m in rows] == [soon.id]


# ---------------------------
# subscriptions
# ---------------------------

def test_subscription_lifecycle_moves_service_counters(db, service):
    s = entitlements.create_subscription(db, service, PHONE, 1000.0, now=NOW)
    db.expire_all()
    svc = db.get(Service, service.id)
    assert (svc.total_subscription_count, svc.active_subscription_count) == (1, 1)

    entitlements.soft_delete(db, s, actor_id=1, now=NOW)
    db.expire_all()
    svc = db.get(Service, service.id)
    assert s.status == EntitlementStatus.CANCELLED
    assert (svc.total_subscription_count, svc.active_subscription_count) == (1, 0)


def test_lifetime_subscription_is_never_swept(db, lifetime_service):
    entitlements.create_subscription(db, lifetime_service, PHONE, 500.0, now=NOW - timedelta(days=4000))

    assert entitlements.auto_expire_sweep(db, UserServiceSubscription, now=NOW) == 0
    assert entitlements.is_currently_active(db, UserServiceSubscription, PHONE, now=NOW)


# ---------------------------
# maintenance
# ---------------------------

def test_reconcile_repairs_drifted_counters(db, plan, service):
    grant(db, plan)
    grant(db, plan)
    refunded = grant(db, plan)
    entitlements.mark_refunded(db, refunded, now=NOW)
    entitlements.create_subscription(db, service, PHONE, 1000.0, now=NOW)

    plan.current_purchases = 17
    service.active_subscription_count = 0
    db.commit()

    fixed = entitlements.reconcile_purchase_counts(db)

    assert fixed == {"membership_plans": 1, "services": 1}
    assert purchases(db, plan) == 2
    assert db.get(Service, service.id).active_subscription_count == 1


def test_link_user_attaches_orphans(db, plan, service):
    m = grant(db, plan)
    s = entitlements.create_subscription(db, service, PHONE, 1000.0, now=NOW)
    assert m.user_id is None

    assert entitlements.link_user(db, "+91 8085816197", 99) == 2
    db.refresh(m)
    db.refresh(s)
    assert (m.user_id, s.user_id) == (99, 99)


class _NoAccounts:
    def find_by_phone(self, phone):
        return None
