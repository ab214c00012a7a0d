from sqlalchemy import ColumnElement, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from memberhub.db.base import Base
from memberhub.models.entitlement import EntitlementMixin


class UserServiceSubscription(EntitlementMixin, Base):
    __tablename__ = "user_service_subscriptions"

    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), index=True)
    service_request_id: Mapped[int | None] = mapped_column(ForeignKey("service_requests.id"), nullable=True)

    service = relationship("Service")
    user = relationship("User")

    __table_args__ = (
        Index("ix_user_service_subscriptions_phone_service", "phone", "service_id"),
        Index("ix_user_service_subscriptions_status_end", "status", "end_date"),
    )

    # end_date IS NULL means lifetime for subscriptions
    @property
    def lifetime(self) -> bool:
        return self.end_date is None

    @classmethod
    def lifetime_clause(cls) -> ColumnElement[bool]:
        return cls.end_date.is_(None)
