from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class MembershipRequestIn(BaseModel):
    phone: str
    name: str
    requested_plan_id: int | None = None
    coupon_code: str | None = None


class WithdrawIn(BaseModel):
    phone: str


class MembershipRequestOut(BaseModel):
    id: int
    phone: str
    name: str
    status: str
    requested_plan_id: int | None
    approved_plan_id: int | None
    payment_amount: float | None
    payment_url: str | None
    order_id: str | None
    rejection_reason: str | None
    user_membership_id: int | None
    created_at: datetime

    class Config:
        from_attributes = True


class ApproveMembershipIn(BaseModel):
    plan_id: int
    payment_amount: float | None = Field(default=None, ge=0)
    coupon_code: str | None = None
    admin_notes: str | None = None
    send_notification: bool = True


class RejectIn(BaseModel):
    reason: str


class ApprovalOut(BaseModel):
    request_id: int
    status: str
    order_id: str
    payment_url: str
    amount: float
    notification_sent: bool


class ServiceRequestIn(BaseModel):
    phone: str
    name: str
    service_ids: list[int]
    email: str | None = None
    user_note: str | None = None


class ServiceRequestOut(BaseModel):
    id: int
    phone: str
    name: str
    email: str | None
    status: str
    services: list[dict[str, Any]]
    total_amount: float
    payment_amount: float | None
    payment_url: str | None
    order_id: str | None
    rejection_reason: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class ApproveServiceIn(BaseModel):
    payment_amount: float | None = Field(default=None, ge=0)
    admin_notes: str | None = None
    send_notification: bool = True


class ClubJoinIn(BaseModel):
    user_id: int
    user_note: str | None = None


class ClubJoinRequestOut(BaseModel):
    id: int
    club_id: int
    user_id: int
    status: str
    rejection_reason: str | None

    class Config:
        from_attributes = True


class ClubJoinOut(BaseModel):
    joined: bool
    request: ClubJoinRequestOut | None = None


class PendingCountsOut(BaseModel):
    membership_requests: int
    service_requests: int
    club_join_requests: int
