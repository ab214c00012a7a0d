from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, ForeignKey, Numeric, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, validates

from memberhub.db.base import Base, JSONDict, TimestampMixin
from memberhub.models.entitlement import PaymentStatus
from memberhub.utils.phone import normalize_phone


class PaymentType(str, Enum):
    MEMBERSHIP = "MEMBERSHIP"
    MEMBERSHIP_REQUEST = "MEMBERSHIP_REQUEST"
    SERVICE_REQUEST = "SERVICE_REQUEST"


class Payment(TimestampMixin, Base):
    """Local mirror of a gateway order; the webhook looks it up by order_id."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True)

    order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    type: Mapped[str] = mapped_column(SAEnum(*[t.value for t in PaymentType], name="payment_type"), index=True)

    phone: Mapped[str] = mapped_column(String(10), index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False))
    discount_amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    final_amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False))
    coupon_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(
        SAEnum(*[s.value for s in PaymentStatus], name="payment_status"),
        default=PaymentStatus.PENDING.value,
        index=True,
    )
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    payment_link_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Gateway enforces link expiry; this copy is for display/cleanup only
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    meta: Mapped[JSONDict] = mapped_column("metadata", JSON, default=dict)

    @validates("phone")
    def _normalize_phone(self, key: str, value: str) -> str:
        return normalize_phone(value)
