from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from memberhub.api.deps import get_now
from memberhub.db.session import get_db
from memberhub.models.membership import UserMembership
from memberhub.schemas.entitlements import MembershipStatusOut, entitlement_out
from memberhub.services.entitlements import find_active_entitlement
from memberhub.utils.phone import normalize_phone

router = APIRouter(prefix="/access", tags=["access"])


def require_active_membership(
    phone: str = Query(...),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> UserMembership:
    """Feature gate. Never query memberships for access any other way."""
    membership = find_active_entitlement(db, UserMembership, phone, now=now)
    if not membership:
        raise HTTPException(status_code=402, detail="Active membership required")
    return membership


@router.get("/membership", response_model=MembershipStatusOut)
def membership_access(
    phone: str = Query(...),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    membership = find_active_entitlement(db, UserMembership, phone, now=now)
    return MembershipStatusOut(
        phone=normalize_phone(phone),
        active=membership is not None,
        membership=entitlement_out(membership, now) if membership else None,
    )
