from sqlalchemy import Boolean, ColumnElement, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from memberhub.db.base import Base
from memberhub.models.entitlement import EntitlementMixin


class UserMembership(EntitlementMixin, Base):
    __tablename__ = "user_memberships"

    membership_plan_id: Mapped[int] = mapped_column(ForeignKey("membership_plans.id"), index=True)

    # Lifetime memberships carry no end_date
    is_lifetime: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    plan = relationship("MembershipPlan")
    user = relationship("User")

    __table_args__ = (
        Index("ix_user_memberships_phone_status_deleted", "phone", "status", "is_deleted"),
        Index("ix_user_memberships_phone_end", "phone", "end_date"),
        Index("ix_user_memberships_payment_status_status", "payment_status", "status"),
    )

    @property
    def lifetime(self) -> bool:
        return bool(self.is_lifetime)

    @classmethod
    def lifetime_clause(cls) -> ColumnElement[bool]:
        return cls.is_lifetime.is_(True)
