from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, validates

from memberhub.db.base import Base, JSONDict, TimestampMixin
from memberhub.utils.phone import normalize_phone


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAYMENT_SENT = "PAYMENT_SENT"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


_request_status = SAEnum(*[s.value for s in RequestStatus], name="request_status")


def title_case(value: str) -> str:
    return " ".join(w[:1].upper() + w[1:].lower() for w in value.split())


class PaidRequestMixin(TimestampMixin):
    """Review + payment-link columns shared by requests that end in a purchase."""

    id: Mapped[int] = mapped_column(primary_key=True)

    phone: Mapped[str] = mapped_column(String(10), index=True)
    name: Mapped[str] = mapped_column(String(100))

    status: Mapped[str] = mapped_column(_request_status, default=RequestStatus.PENDING.value, index=True)

    reviewed_by: Mapped[int | None] = mapped_column(nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    original_amount: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=True)
    payment_amount: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=True)
    discount_amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    coupon_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    payment_link_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # withdrawal is a soft delete
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @validates("phone")
    def _normalize_phone(self, key: str, value: str) -> str:
        return normalize_phone(value)

    @validates("name")
    def _title_name(self, key: str, value: str) -> str:
        return title_case(value.strip()) if value else value


class MembershipRequest(PaidRequestMixin, Base):
    __tablename__ = "membership_requests"

    requested_plan_id: Mapped[int | None] = mapped_column(ForeignKey("membership_plans.id"), nullable=True)
    approved_plan_id: Mapped[int | None] = mapped_column(ForeignKey("membership_plans.id"), nullable=True)
    existing_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    user_membership_id: Mapped[int | None] = mapped_column(ForeignKey("user_memberships.id"), nullable=True)

    __table_args__ = (
        Index("ix_membership_requests_phone_status", "phone", "status"),
    )


class ServiceRequest(PaidRequestMixin, Base):
    __tablename__ = "service_requests"

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    # [{"service_id": int, "service_name": str, "price": float}, ...]
    services: Mapped[list[JSONDict]] = mapped_column(JSON, default=list)
    total_amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    user_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_service_requests_phone_status", "phone", "status"),
    )

    def service_names(self) -> str:
        return ", ".join(s["service_name"] for s in self.services or [])
