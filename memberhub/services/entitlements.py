"""
Entitlement lifecycle engine.

Every mutation is a single conditional UPDATE (`id = :id AND <guard>`). When
the guard does not match, somebody else changed the row first and the
operation is either skipped (returns False) or rejected with an AppError,
never applied on top of stale state.

Plan / service counters are adjusted with a separate UPDATE after the
entitlement write. They can drift on a crash between the two statements;
`reconcile_purchase_counts` recomputes them.
"""
import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import ColumnElement, case, delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from memberhub.core.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from memberhub.integrations.accounts import AccountLookup, SqlAccountLookup
from memberhub.models.entitlement import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    DisplayStatus,
    EntitlementMixin,
    EntitlementStatus,
    PaymentStatus,
    PurchaseMethod,
)
from memberhub.models.membership import UserMembership
from memberhub.models.plan import MembershipPlan, Service
from memberhub.models.requests import MembershipRequest
from memberhub.models.subscription import UserServiceSubscription
from memberhub.utils.dt import as_utc_aware
from memberhub.utils.phone import mask_phone, normalize_phone, require_phone

logger = logging.getLogger(__name__)

EntitlementModel = type[UserMembership] | type[UserServiceSubscription]

DELETED_BY_ADMIN = "Deleted by admin"
PAYMENT_REFUNDED = "Payment refunded"

# Payment outcomes that still count as a purchase
_COUNTED_PAYMENTS = (PaymentStatus.PENDING.value, PaymentStatus.SUCCESS.value)


def new_order_id(prefix: str = "order") -> str:
    return f"{prefix}_{uuid4().hex[:20]}"


def _kind(model: Any) -> str:
    if model is UserMembership or isinstance(model, UserMembership):
        return "membership"
    return "subscription"


# ---------------------------
# write helpers
# ---------------------------

def _guarded_update(
    db: Session,
    ent: EntitlementMixin,
    guard: ColumnElement[bool] | None,
    values: dict[str, Any],
) -> bool:
    """Apply `values` to `ent`'s row only if `guard` still holds. Commits."""
    model = type(ent)
    stmt = update(model).where(model.id == ent.id)
    if guard is not None:
        stmt = stmt.where(guard)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    result = db.execute(stmt)
    db.commit()
    # commit expired ent; next attribute access reloads the row
    return result.rowcount == 1


def _adjust(db: Session, column: Any, row_id: int, delta: int) -> None:
    table = column.class_
    new_value = column + delta
    db.execute(
        update(table)
        .where(table.id == row_id)
        .values({column.key: case((new_value < 0, 0), else_=new_value)})
        .execution_options(synchronize_session=False)
    )
    db.commit()


def _count_purchase(db: Session, ent: EntitlementMixin) -> None:
    if isinstance(ent, UserMembership):
        _adjust(db, MembershipPlan.current_purchases, ent.membership_plan_id, +1)
    else:
        _adjust(db, Service.total_subscription_count, ent.service_id, +1)
        _adjust(db, Service.active_subscription_count, ent.service_id, +1)


def _release_slot(db: Session, ent: EntitlementMixin) -> None:
    # a live subscription stopped occupying a slot
    if isinstance(ent, UserServiceSubscription):
        _adjust(db, Service.active_subscription_count, ent.service_id, -1)


def _recount_purchase(db: Session, ent: EntitlementMixin) -> None:
    if isinstance(ent, UserMembership):
        _adjust(db, MembershipPlan.current_purchases, ent.membership_plan_id, +1)
    else:
        _adjust(db, Service.total_subscription_count, ent.service_id, +1)


def _uncount_purchase(db: Session, ent: EntitlementMixin, was_live: bool) -> None:
    if isinstance(ent, UserMembership):
        _adjust(db, MembershipPlan.current_purchases, ent.membership_plan_id, -1)
        return
    _adjust(db, Service.total_subscription_count, ent.service_id, -1)
    if was_live:
        _adjust(db, Service.active_subscription_count, ent.service_id, -1)


def _insert(db: Session, ent: EntitlementMixin) -> None:
    db.add(ent)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            f"A {_kind(ent)} with order id '{ent.order_id}' already exists",
            details={"orderId": ent.order_id},
        ) from exc
    db.refresh(ent)


def _initial_payment_status(method: PurchaseMethod, payment_confirmed: bool | None) -> str:
    if payment_confirmed is None:
        # admin grants and webhook-confirmed requests are already paid
        payment_confirmed = method in (PurchaseMethod.ADMIN, PurchaseMethod.REQUEST)
    return PaymentStatus.SUCCESS.value if payment_confirmed else PaymentStatus.PENDING.value


def _resolve_user_id(db: Session, phone: str, user_id: int | None, accounts: AccountLookup | None) -> int | None:
    if user_id is not None:
        return user_id
    user = (accounts or SqlAccountLookup(db)).find_by_phone(phone)
    return user.id if user else None


def _check_amount(amount: float) -> float:
    if amount is None or amount < 0:
        raise ValidationError("Amount paid cannot be negative", field="amount_paid")
    return float(amount)


# ---------------------------
# creation
# ---------------------------

def create_membership(
    db: Session,
    plan: MembershipPlan,
    phone: str,
    amount: float,
    purchase_method: PurchaseMethod | str,
    *,
    now: datetime,
    order_id: str | None = None,
    payment_id: str | None = None,
    user_id: int | None = None,
    created_by: int | None = None,
    admin_notes: str | None = None,
    payment_confirmed: bool | None = None,
    meta: dict[str, Any] | None = None,
    accounts: AccountLookup | None = None,
    check_availability: bool = True,
) -> UserMembership:
    phone = require_phone(phone)
    amount = _check_amount(amount)
    method = PurchaseMethod(purchase_method)

    ok, reason = plan.can_be_purchased() if check_availability else (True, None)
    if not ok:
        raise ValidationError(reason, field="membership_plan_id")

    end_date = None if plan.is_lifetime else now + timedelta(days=plan.duration_in_days)

    membership = UserMembership(
        phone=phone,
        user_id=_resolve_user_id(db, phone, user_id, accounts),
        membership_plan_id=plan.id,
        plan_snapshot=plan.snapshot(),
        is_lifetime=bool(plan.is_lifetime),
        start_date=now,
        end_date=end_date,
        status=EntitlementStatus.ACTIVE.value,
        payment_status=_initial_payment_status(method, payment_confirmed),
        order_id=order_id or new_order_id(method.value.lower()),
        payment_id=payment_id,
        purchase_method=method.value,
        amount_paid=amount,
        admin_notes=admin_notes,
        created_by=created_by,
        meta=meta or {},
        created_at=now,
        updated_at=now,
    )
    _insert(db, membership)
    _count_purchase(db, membership)

    logger.info(
        "Membership %s created for %s (plan=%s, method=%s, payment=%s)",
        membership.id, mask_phone(phone), plan.id, method.value, membership.payment_status,
    )
    return membership


def create_subscription(
    db: Session,
    service: Service,
    phone: str,
    amount: float,
    *,
    now: datetime,
    order_id: str | None = None,
    purchase_method: PurchaseMethod | str = PurchaseMethod.REQUEST,
    payment_id: str | None = None,
    user_id: int | None = None,
    service_request_id: int | None = None,
    created_by: int | None = None,
    payment_confirmed: bool | None = None,
    meta: dict[str, Any] | None = None,
    accounts: AccountLookup | None = None,
    check_availability: bool = True,
) -> UserServiceSubscription:
    phone = require_phone(phone)
    amount = _check_amount(amount)
    method = PurchaseMethod(purchase_method)

    ok, reason = service.can_be_purchased() if check_availability else (True, None)
    if not ok:
        raise ValidationError(reason, field="service_id")

    end_date = now + timedelta(days=service.duration_in_days) if service.duration_in_days else None

    subscription = UserServiceSubscription(
        phone=phone,
        user_id=_resolve_user_id(db, phone, user_id, accounts),
        service_id=service.id,
        service_request_id=service_request_id,
        plan_snapshot=service.snapshot(),
        start_date=now,
        end_date=end_date,
        status=EntitlementStatus.ACTIVE.value,
        payment_status=_initial_payment_status(method, payment_confirmed),
        order_id=order_id or new_order_id("sub"),
        payment_id=payment_id,
        purchase_method=method.value,
        amount_paid=amount,
        created_by=created_by,
        meta=meta or {},
        created_at=now,
        updated_at=now,
    )
    _insert(db, subscription)
    _count_purchase(db, subscription)

    logger.info(
        "Subscription %s created for %s (service=%s, method=%s)",
        subscription.id, mask_phone(phone), service.id, method.value,
    )
    return subscription


# ---------------------------
# transitions
# ---------------------------

def confirm_payment(
    db: Session,
    ent: EntitlementMixin,
    payment_id: str,
    user_id: int | None = None,
    *,
    now: datetime,
) -> bool:
    model = type(ent)
    values: dict[str, Any] = {
        "payment_status": PaymentStatus.SUCCESS.value,
        "status": EntitlementStatus.ACTIVE.value,
        "payment_id": payment_id,
        "updated_at": now,
    }
    if user_id is not None:
        values["user_id"] = user_id

    live = model.status.in_(LIVE_STATUSES) & model.is_deleted.is_(False)
    applied = _guarded_update(db, ent, (model.payment_status == PaymentStatus.PENDING.value) & live, values)
    if not applied:
        # retry after a failed attempt; the failure dropped it from the counters
        applied = _guarded_update(db, ent, (model.payment_status == PaymentStatus.FAILED.value) & live, values)
        if applied:
            _recount_purchase(db, ent)

    if applied:
        logger.info("Payment confirmed for %s %s (payment_id=%s)", _kind(ent), ent.id, payment_id)
    elif ent.payment_status == PaymentStatus.SUCCESS:
        logger.info("Payment for %s %s already confirmed", _kind(ent), ent.id)
    else:
        logger.warning(
            "Ignoring late payment confirmation for %s %s (status=%s, deleted=%s)",
            _kind(ent), ent.id, ent.status, ent.is_deleted,
        )
    return applied


def mark_payment_failed(db: Session, ent: EntitlementMixin, reason: str | None = None, *, now: datetime) -> bool:
    """
    Record a failed attempt. The entitlement stays PENDING/ACTIVE so the buyer
    can pay again; it is never active while payment_status is FAILED.
    """
    model = type(ent)
    applied = _guarded_update(
        db,
        ent,
        (model.payment_status == PaymentStatus.PENDING.value)
        & model.status.in_(LIVE_STATUSES)
        & model.is_deleted.is_(False),
        {"payment_status": PaymentStatus.FAILED.value, "updated_at": now},
    )
    if applied:
        # a subscription keeps its slot until it is cancelled
        _uncount_purchase(db, ent, was_live=False)
        logger.info("Payment failed for %s %s: %s", _kind(ent), ent.id, reason)
    return applied


def cancel(
    db: Session,
    ent: EntitlementMixin,
    actor_id: int | None,
    reason: str | None = None,
    *,
    now: datetime,
) -> EntitlementMixin:
    model = type(ent)
    was_live = ent.status in LIVE_STATUSES
    applied = _guarded_update(
        db,
        ent,
        model.status.not_in(TERMINAL_STATUSES),
        {
            "status": EntitlementStatus.CANCELLED.value,
            "cancelled_at": now,
            "cancelled_by": actor_id,
            "cancellation_reason": reason,
            "updated_at": now,
        },
    )
    if not applied:
        raise InvalidStateError(f"Cannot cancel a {_kind(ent)} that is {ent.status.lower()}")

    if was_live and not ent.is_deleted:
        _release_slot(db, ent)
    logger.info("%s %s cancelled by %s", _kind(ent).capitalize(), ent.id, actor_id)
    return ent


def mark_refunded(db: Session, ent: EntitlementMixin, *, now: datetime, reason: str = PAYMENT_REFUNDED) -> bool:
    model = type(ent)
    was_live = ent.status in LIVE_STATUSES and not ent.is_deleted
    counted = ent.payment_status in _COUNTED_PAYMENTS
    applied = _guarded_update(
        db,
        ent,
        model.status != EntitlementStatus.REFUNDED.value,
        {
            "status": EntitlementStatus.REFUNDED.value,
            "payment_status": PaymentStatus.REFUNDED.value,
            "cancelled_at": now,
            "cancellation_reason": reason,
            "updated_at": now,
        },
    )
    if applied:
        if counted:
            _uncount_purchase(db, ent, was_live)
        elif was_live:
            _release_slot(db, ent)
        logger.info("%s %s refunded", _kind(ent).capitalize(), ent.id)
    return applied


def extend(db: Session, ent: EntitlementMixin, additional_days: int, *, now: datetime) -> EntitlementMixin:
    if isinstance(additional_days, bool) or not isinstance(additional_days, int) or additional_days <= 0:
        raise ValidationError("Additional days must be a positive whole number", field="additional_days")

    db.refresh(ent)
    kind = _kind(ent)
    if ent.status in TERMINAL_STATUSES:
        raise InvalidStateError(f"Cannot extend a {ent.status.lower()} {kind}")
    if ent.is_deleted:
        raise InvalidStateError(f"Cannot extend a deleted {kind}")
    if ent.lifetime:
        raise ValidationError(f"Lifetime {kind}s cannot be extended", field="additional_days")

    model = type(ent)
    old_end = ent.end_date
    old_status = ent.status
    base = as_utc_aware(old_end) or as_utc_aware(ent.start_date)
    new_end = base + timedelta(days=additional_days)

    values: dict[str, Any] = {"end_date": new_end, "updated_at": now}
    start = as_utc_aware(ent.start_date)
    if (
        old_status == EntitlementStatus.EXPIRED
        and ent.payment_status == PaymentStatus.SUCCESS
        and start <= now < new_end
    ):
        values["status"] = EntitlementStatus.ACTIVE.value

    end_unchanged = model.end_date.is_(None) if old_end is None else model.end_date == old_end
    applied = _guarded_update(db, ent, end_unchanged & (model.status == old_status), values)
    if not applied:
        raise ConflictError(f"The {kind} was modified concurrently, please retry")

    logger.info(
        "%s %s extended by %s days (end_date %s -> %s)",
        kind.capitalize(), ent.id, additional_days, old_end, new_end,
    )
    return ent


def soft_delete(db: Session, ent: EntitlementMixin, actor_id: int | None, *, now: datetime) -> EntitlementMixin:
    """
    Delete and, for PENDING/ACTIVE rows, cancel in the same statement so a
    deleted entitlement can never satisfy the active predicate.
    """
    model = type(ent)
    was_live = ent.status in LIVE_STATUSES
    is_live = model.status.in_(LIVE_STATUSES)

    applied = _guarded_update(
        db,
        ent,
        model.is_deleted.is_(False),
        {
            "is_deleted": True,
            "deleted_at": now,
            "deleted_by": actor_id,
            "status": case((is_live, EntitlementStatus.CANCELLED.value), else_=model.status),
            "cancelled_at": case((is_live, now), else_=model.cancelled_at),
            "cancelled_by": case((is_live, actor_id), else_=model.cancelled_by),
            "cancellation_reason": case((is_live, DELETED_BY_ADMIN), else_=model.cancellation_reason),
            "updated_at": now,
        },
    )
    if not applied:
        raise InvalidStateError(f"{_kind(ent).capitalize()} is already deleted")

    if was_live:
        _release_slot(db, ent)
    logger.info("%s %s soft-deleted by %s (status now %s)", _kind(ent).capitalize(), ent.id, actor_id, ent.status)
    return ent


def restore(db: Session, ent: EntitlementMixin, *, now: datetime | None = None) -> EntitlementMixin:
    """Undo a soft delete. A cancellation forced by the delete stays in place."""
    model = type(ent)
    values: dict[str, Any] = {"is_deleted": False, "deleted_at": None, "deleted_by": None}
    if now is not None:
        values["updated_at"] = now

    if not _guarded_update(db, ent, model.is_deleted.is_(True), values):
        raise InvalidStateError(f"{_kind(ent).capitalize()} is not deleted")

    logger.info("%s %s restored (status %s)", _kind(ent).capitalize(), ent.id, ent.status)
    return ent


def permanent_delete(db: Session, ent: EntitlementMixin) -> None:
    model = type(ent)
    ent_id = ent.id

    if isinstance(ent, UserMembership):
        db.execute(
            update(MembershipRequest)
            .where(MembershipRequest.user_membership_id == ent_id)
            .values(user_membership_id=None)
            .execution_options(synchronize_session=False)
        )

    result = db.execute(
        delete(model)
        .where(model.id == ent_id, model.is_deleted.is_(True))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidStateError(f"Only deleted {_kind(model)}s can be permanently deleted")

    db.commit()
    db.expunge(ent)
    logger.info("%s %s permanently deleted", _kind(model).capitalize(), ent_id)


def auto_expire_sweep(db: Session, model: EntitlementModel, *, now: datetime) -> int:
    """Flip every ACTIVE row whose window has passed to EXPIRED. Idempotent."""
    try:
        result = db.execute(
            update(model)
            .where(model.expirable_clause(now))
            .values(status=EntitlementStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Expiry sweep failed for %s", model.__tablename__)
        raise

    count = result.rowcount or 0
    if count:
        logger.info("Expired %s %s row(s)", count, model.__tablename__)
    return count


# ---------------------------
# queries
# ---------------------------

def get_entitlement(db: Session, model: EntitlementModel, ent_id: int) -> EntitlementMixin:
    ent = db.get(model, ent_id)
    if not ent:
        raise NotFoundError(f"{_kind(model).capitalize()} not found")
    return ent


def get_by_order_id(db: Session, model: EntitlementModel, order_id: str) -> EntitlementMixin | None:
    return db.query(model).filter(model.order_id == order_id).first()


def list_for_phone(db: Session, model: EntitlementModel, phone: str, include_deleted: bool = False) -> list:
    q = db.query(model).filter(model.phone == normalize_phone(phone))
    if not include_deleted:
        q = q.filter(model.is_deleted.is_(False))
    return q.order_by(model.created_at.desc()).all()


def find_active_entitlement(db: Session, model: EntitlementModel, phone: str, *, now: datetime):
    phone = normalize_phone(phone)
    if not phone:
        return None
    return (
        db.query(model)
        .filter(model.phone == phone, model.active_clause(now))
        .order_by(*model.longest_remaining_first())
        .first()
    )


def is_currently_active(db: Session, model: EntitlementModel, phone: str, *, now: datetime) -> bool:
    return find_active_entitlement(db, model, phone, now=now) is not None


def get_current_status(ent: EntitlementMixin, now: datetime) -> DisplayStatus:
    return ent.current_status(now)


def find_expiring_soon(db: Session, model: EntitlementModel, days: int, *, now: datetime) -> list:
    if days < 0:
        raise ValidationError("Days must not be negative", field="days")
    return (
        db.query(model)
        .filter(
            model.active_clause(now),
            ~model.lifetime_clause(),
            model.end_date <= now + timedelta(days=days),
        )
        .order_by(model.end_date.asc())
        .all()
    )


# ---------------------------
# maintenance
# ---------------------------

def reconcile_purchase_counts(db: Session) -> dict[str, int]:
    """Recompute the denormalized plan / service counters from entitlement rows."""
    purchases = dict(
        db.query(UserMembership.membership_plan_id, func.count(UserMembership.id))
        .filter(UserMembership.payment_status.in_(_COUNTED_PAYMENTS))
        .group_by(UserMembership.membership_plan_id)
        .all()
    )
    totals = dict(
        db.query(UserServiceSubscription.service_id, func.count(UserServiceSubscription.id))
        .filter(UserServiceSubscription.payment_status.in_(_COUNTED_PAYMENTS))
        .group_by(UserServiceSubscription.service_id)
        .all()
    )
    live = dict(
        db.query(UserServiceSubscription.service_id, func.count(UserServiceSubscription.id))
        .filter(
            UserServiceSubscription.status.in_(LIVE_STATUSES),
            UserServiceSubscription.is_deleted.is_(False),
        )
        .group_by(UserServiceSubscription.service_id)
        .all()
    )

    fixed_plans = 0
    for plan in db.query(MembershipPlan).all():
        expected = purchases.get(plan.id, 0)
        if plan.current_purchases != expected:
            logger.warning("Plan %s current_purchases %s -> %s", plan.id, plan.current_purchases, expected)
            plan.current_purchases = expected
            fixed_plans += 1

    fixed_services = 0
    for service in db.query(Service).all():
        expected_total = totals.get(service.id, 0)
        expected_live = live.get(service.id, 0)
        if (service.total_subscription_count, service.active_subscription_count) != (expected_total, expected_live):
            logger.warning(
                "Service %s counters (%s, %s) -> (%s, %s)",
                service.id, service.total_subscription_count, service.active_subscription_count,
                expected_total, expected_live,
            )
            service.total_subscription_count = expected_total
            service.active_subscription_count = expected_live
            fixed_services += 1

    db.commit()
    return {"membership_plans": fixed_plans, "services": fixed_services}


def link_user(db: Session, phone: str, user_id: int) -> int:
    """Attach a newly registered account to entitlements bought before it existed."""
    phone = normalize_phone(phone)
    linked = 0
    for model in (UserMembership, UserServiceSubscription):
        result = db.execute(
            update(model)
            .where(model.phone == phone, model.user_id.is_(None))
            .values(user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        linked += result.rowcount or 0
    db.commit()

    if linked:
        logger.info("Linked %s entitlement(s) for %s to user %s", linked, mask_phone(phone), user_id)
    return linked
