from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from memberhub.api.deps import get_current_admin, get_now
from memberhub.db.session import get_db
from memberhub.models.subscription import UserServiceSubscription
from memberhub.models.user import Admin
from memberhub.schemas.entitlements import CancelIn, EntitlementOut, SweepOut, entitlement_out
from memberhub.services import entitlements

router = APIRouter(prefix="/admin/subscriptions", tags=["subscriptions"])


def _get(db: Session, subscription_id: int) -> UserServiceSubscription:
    return entitlements.get_entitlement(db, UserServiceSubscription, subscription_id)


@router.get("", response_model=list[EntitlementOut])
def list_subscriptions(
    phone: str = Query(...),
    include_deleted: bool = False,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    rows = entitlements.list_for_phone(db, UserServiceSubscription, phone, include_deleted=include_deleted)
    return [entitlement_out(s, now) for s in rows]


@router.post("/expire", response_model=SweepOut)
def expire_subscriptions(
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    return SweepOut(expired=entitlements.auto_expire_sweep(db, UserServiceSubscription, now=now))


@router.post("/{subscription_id}/cancel", response_model=EntitlementOut)
def cancel_subscription(
    subscription_id: int,
    payload: CancelIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    subscription = entitlements.cancel(db, _get(db, subscription_id), admin.id, payload.reason, now=now)
    return entitlement_out(subscription, now)


@router.delete("/{subscription_id}", response_model=EntitlementOut)
def delete_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    subscription = entitlements.soft_delete(db, _get(db, subscription_id), admin.id, now=now)
    return entitlement_out(subscription, now)


@router.post("/{subscription_id}/restore", response_model=EntitlementOut)
def restore_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    subscription = entitlements.restore(db, _get(db, subscription_id), now=now)
    return entitlement_out(subscription, now)
