from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from memberhub.api.deps import get_current_admin, get_now
from memberhub.db.session import get_db
from memberhub.models.user import Admin
from memberhub.schemas.requests import ClubJoinIn, ClubJoinOut, ClubJoinRequestOut, RejectIn
from memberhub.services import approvals

router = APIRouter(tags=["clubs"])


@router.post("/clubs/{club_id}/join", response_model=ClubJoinOut, status_code=201)
def join_club(
    club_id: int,
    payload: ClubJoinIn,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    outcome = approvals.submit_club_join_request(db, payload.user_id, club_id, payload.user_note, now=now)
    return ClubJoinOut(
        joined=outcome.joined,
        request=ClubJoinRequestOut.model_validate(outcome.request) if outcome.request else None,
    )


@router.post("/admin/club-join-requests/{request_id}/approve", response_model=ClubJoinRequestOut)
def approve_club_join_request(
    request_id: int,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    return approvals.approve_club_join_request(db, request_id, admin.id, now=now)


@router.post("/admin/club-join-requests/{request_id}/reject", response_model=ClubJoinRequestOut)
def reject_club_join_request(
    request_id: int,
    payload: RejectIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(get_current_admin),
    now: datetime = Depends(get_now),
):
    return approvals.reject_club_join_request(db, request_id, admin.id, payload.reason, now=now)
