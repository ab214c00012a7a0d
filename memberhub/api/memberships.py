from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from memberhub.api.access import membership_access
from memberhub.api.deps import get_current_admin, get_gateway, get_now
from memberhub.core.config import settings
from memberhub.core.errors import NotFoundError
from memberhub.db.session import get_db
from memberhub.integrations.gateway import PaymentGateway
from memberhub.models.membership import UserMembership
from memberhub.models.plan import MembershipPlan
from memberhub.models.user import Admin
from memberhub.schemas.entitlements import (
    CancelIn,
    EntitlementOut,
    ExtendIn,
    MembershipCreateIn,
    MembershipOrderIn,
    MembershipOrderOut,
    MembershipStatusOut,
    ReconcileOut,
    SweepOut,
    entitlement_out,
)
from memberhub.services import entitlements, payments

router = APIRouter(prefix="/admin/memberships", tags=["memberships"])
maintenance_router = APIRouter(prefix="/admin/maintenance", tags=["maintenance"])
public_router = APIRouter(prefix="/memberships", tags=["memberships"])


def _get(db: Session, membership_id: int) -> UserMembership:
    return entitlements.get_entitlement(db, UserMembership, membership_id)


# Admin grant (payment settled out of band)
@router.post("", response_model=EntitlementOut, status_code=201)
def create_membership(
    payload: MembershipCreateIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    plan = db.get(MembershipPlan, payload.plan_id)
    if not plan or plan.is_deleted:
        raise NotFoundError("Membership plan not found")

    amount = payload.amount_paid if payload.amount_paid is not None else float(plan.price)
    membership = entitlements.create_membership(
        db,
        plan,
        payload.phone,
        amount,
        payload.purchase_method,
        now=now,
        created_by=admin.id,
        admin_notes=payload.admin_notes,
    )
    return entitlement_out(membership, now)


@router.get("", response_model=list[EntitlementOut])
def list_memberships(
    phone: str = Query(...),
    include_deleted: bool = False,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    rows = entitlements.list_for_phone(db, UserMembership, phone, include_deleted=include_deleted)
    return [entitlement_out(m, now) for m in rows]


@router.get("/expiring", response_model=list[EntitlementOut])
def expiring_memberships(
    days: int = Query(7, ge=0),
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    rows = entitlements.find_expiring_soon(db, UserMembership, days, now=now)
    return [entitlement_out(m, now) for m in rows]


# Lazy expiry: persisted status catches up with the clock
@router.post("/expire", response_model=SweepOut)
def expire_memberships(
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    return SweepOut(expired=entitlements.auto_expire_sweep(db, UserMembership, now=now))


@router.get("/{membership_id}", response_model=EntitlementOut)
def get_membership(
    membership_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    return entitlement_out(_get(db, membership_id), now)


@router.post("/{membership_id}/cancel", response_model=EntitlementOut)
def cancel_membership(
    membership_id: int,
    payload: CancelIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    membership = entitlements.cancel(db, _get(db, membership_id), admin.id, payload.reason, now=now)
    return entitlement_out(membership, now)


@router.post("/{membership_id}/extend", response_model=EntitlementOut)
def extend_membership(
    membership_id: int,
    payload: ExtendIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    membership = entitlements.extend(db, _get(db, membership_id), payload.additional_days, now=now)
    return entitlement_out(membership, now)


@router.post("/{membership_id}/refund", response_model=EntitlementOut)
def refund_membership(
    membership_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    membership = _get(db, membership_id)
    entitlements.mark_refunded(db, membership, now=now)
    return entitlement_out(membership, now)


@router.delete("/{membership_id}", response_model=EntitlementOut)
def delete_membership(
    membership_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    membership = entitlements.soft_delete(db, _get(db, membership_id), admin.id, now=now)
    return entitlement_out(membership, now)


@router.post("/{membership_id}/restore", response_model=EntitlementOut)
def restore_membership(
    membership_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    membership = entitlements.restore(db, _get(db, membership_id), now=now)
    return entitlement_out(membership, now)


@router.delete("/{membership_id}/permanent", status_code=204)
def permanently_delete_membership(
    membership_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
):
    entitlements.permanent_delete(db, _get(db, membership_id))


@maintenance_router.post("/reconcile-counters", response_model=ReconcileOut)
def reconcile_counters(db: Session = Depends(get_db), admin: Admin = Depends(get_current_admin)):
    return ReconcileOut(**entitlements.reconcile_purchase_counts(db))


# In-app purchase: membership is ACTIVE but unusable until the webhook confirms payment
@public_router.post("/orders", response_model=MembershipOrderOut, status_code=201)
def create_membership_order(
    payload: MembershipOrderIn,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    now: datetime = Depends(get_now),
):
    membership, order = payments.create_membership_order(
        db, payload.plan_id, payload.phone, now=now, gateway=gateway, currency=settings.currency,
    )
    return MembershipOrderOut(membership_id=membership.id, order_id=order.order_id, checkout_url=order.checkout_url)


# same contract as /access/membership
public_router.add_api_route("/status", membership_access, methods=["GET"], response_model=MembershipStatusOut)
