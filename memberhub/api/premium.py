from fastapi import APIRouter, Depends

from memberhub.api.access import require_active_membership
from memberhub.models.membership import UserMembership

router = APIRouter(prefix="/premium", tags=["premium"])


@router.get("/feature")
def premium_feature(membership: UserMembership = Depends(require_active_membership)):
    return {"ok": True, "message": "You have premium access!", "membership_id": membership.id}
