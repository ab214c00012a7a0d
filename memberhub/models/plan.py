from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from memberhub.db.base import Base, JSONDict, TimestampMixin


class MembershipPlan(TimestampMixin, Base):
    __tablename__ = "membership_plans"

    id: Mapped[int] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")

    # Money (use Numeric for currency)
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False))

    duration_in_days: Mapped[int] = mapped_column(Integer)
    is_lifetime: Mapped[bool] = mapped_column(Boolean, default=False)

    perks: Mapped[list[str]] = mapped_column(JSON, default=list)
    meta: Mapped[JSONDict] = mapped_column("metadata", JSON, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # None = unlimited
    max_purchases: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Denormalized; maintained by separate writes, see reconcile_purchase_counts
    current_purchases: Mapped[int] = mapped_column(Integer, default=0)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[int | None] = mapped_column(nullable=True)

    def can_be_purchased(self) -> tuple[bool, str | None]:
        if not self.is_active or self.is_deleted:
            return False, "Plan is not available"
        if self.max_purchases is not None and self.current_purchases >= self.max_purchases:
            return False, "Purchase limit reached"
        return True, None

    def snapshot(self) -> JSONDict:
        return {
            "name": self.name,
            "description": self.description,
            "duration_in_days": self.duration_in_days,
            "is_lifetime": bool(self.is_lifetime),
            "perks": list(self.perks or []),
            "metadata": dict(self.meta or {}),
        }


class Service(TimestampMixin, Base):
    __tablename__ = "services"

    id: Mapped[int] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False))

    # None = lifetime access
    duration_in_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    perks: Mapped[list[str]] = mapped_column(JSON, default=list)
    meta: Mapped[JSONDict] = mapped_column("metadata", JSON, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=True)

    max_subscriptions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    active_subscription_count: Mapped[int] = mapped_column(Integer, default=0)
    total_subscription_count: Mapped[int] = mapped_column(Integer, default=0)

    def has_available_slots(self) -> bool:
        if self.max_subscriptions is None:
            return True
        return self.active_subscription_count < self.max_subscriptions

    def can_be_purchased(self) -> tuple[bool, str | None]:
        if not self.is_active:
            return False, f"Service '{self.name}' is not available"
        if not self.has_available_slots():
            return False, f"Service '{self.name}' has no available slots"
        return True, None

    def snapshot(self) -> JSONDict:
        return {
            "name": self.name,
            "description": self.description,
            "duration_in_days": self.duration_in_days,
            "perks": list(self.perks or []),
            "metadata": dict(self.meta or {}),
        }
