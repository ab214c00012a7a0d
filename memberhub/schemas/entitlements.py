import math
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from memberhub.models.entitlement import EntitlementMixin
from memberhub.models.membership import UserMembership
from memberhub.utils.dt import as_utc_aware


class EntitlementOut(BaseModel):
    id: int
    phone: str
    user_id: int | None
    order_id: str
    payment_id: str | None
    purchase_method: str
    amount_paid: float
    start_date: datetime
    end_date: datetime | None
    is_lifetime: bool
    status: str
    payment_status: str
    is_deleted: bool
    deleted_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    plan_id: int
    plan_snapshot: dict[str, Any]
    admin_notes: str | None

    # derived at read time
    current_status: str
    is_currently_active: bool
    # None for lifetime
    days_remaining: int | None


def entitlement_out(ent: EntitlementMixin, now: datetime) -> EntitlementOut:
    days = ent.days_remaining(now)
    plan_id = ent.membership_plan_id if isinstance(ent, UserMembership) else ent.service_id
    return EntitlementOut(
        id=ent.id,
        phone=ent.phone,
        user_id=ent.user_id,
        order_id=ent.order_id,
        payment_id=ent.payment_id,
        purchase_method=ent.purchase_method,
        amount_paid=float(ent.amount_paid or 0),
        start_date=as_utc_aware(ent.start_date),
        end_date=as_utc_aware(ent.end_date),
        is_lifetime=ent.lifetime,
        status=ent.status,
        payment_status=ent.payment_status,
        is_deleted=ent.is_deleted,
        deleted_at=as_utc_aware(ent.deleted_at),
        cancelled_at=as_utc_aware(ent.cancelled_at),
        cancellation_reason=ent.cancellation_reason,
        plan_id=plan_id,
        plan_snapshot=ent.plan_snapshot or {},
        admin_notes=ent.admin_notes,
        current_status=ent.current_status(now).value,
        is_currently_active=ent.is_currently_active(now),
        days_remaining=None if math.isinf(days) else int(days),
    )


class MembershipCreateIn(BaseModel):
    phone: str
    plan_id: int
    # defaults to the plan price
    amount_paid: float | None = None
    purchase_method: Literal["ADMIN", "IN_APP", "WEBSITE"] = "ADMIN"
    admin_notes: str | None = None


class CancelIn(BaseModel):
    reason: str | None = None


class ExtendIn(BaseModel):
    additional_days: int = Field(gt=0)


class SweepOut(BaseModel):
    expired: int


class ReconcileOut(BaseModel):
    membership_plans: int
    services: int


class MembershipOrderIn(BaseModel):
    plan_id: int
    phone: str


class MembershipOrderOut(BaseModel):
    membership_id: int
    order_id: str
    checkout_url: str | None


class MembershipStatusOut(BaseModel):
    phone: str
    active: bool
    membership: EntitlementOut | None = None
