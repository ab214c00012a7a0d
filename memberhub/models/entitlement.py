"""
Columns and read-time predicates shared by every phone-keyed entitlement
(memberships and service subscriptions).

The Python predicates (`is_currently_active`, `current_status`, ...) and their
SQL counterparts (`active_clause`, `expirable_clause`) live side by side so
feature gates never re-derive them.
"""
import math
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    ColumnElement,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    and_,
    or_,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, validates

from memberhub.db.base import JSONDict, TimestampMixin, utcnow
from memberhub.utils.dt import as_utc_aware
from memberhub.utils.phone import normalize_phone


class EntitlementStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PurchaseMethod(str, Enum):
    ADMIN = "ADMIN"
    IN_APP = "IN_APP"
    WEBSITE = "WEBSITE"
    REQUEST = "REQUEST"


class DisplayStatus(str, Enum):
    DELETED = "DELETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    UPCOMING = "UPCOMING"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = (EntitlementStatus.CANCELLED.value, EntitlementStatus.REFUNDED.value)
LIVE_STATUSES = (EntitlementStatus.PENDING.value, EntitlementStatus.ACTIVE.value)

DAY_SECONDS = 24 * 60 * 60


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [m.value for m in enum_cls]


class EntitlementMixin(TimestampMixin):
    id: Mapped[int] = mapped_column(primary_key=True)

    # Correlation key, always the last 10 digits
    phone: Mapped[str] = mapped_column(String(10), index=True)
    # Filled in lazily once an account with this phone exists
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)

    order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    purchase_method: Mapped[str] = mapped_column(
        SAEnum(*_enum_values(PurchaseMethod), name="purchase_method"),
        default=PurchaseMethod.IN_APP.value,
    )
    amount_paid: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    status: Mapped[str] = mapped_column(
        SAEnum(*_enum_values(EntitlementStatus), name="entitlement_status"),
        default=EntitlementStatus.PENDING.value,
        index=True,
    )
    payment_status: Mapped[str] = mapped_column(
        SAEnum(*_enum_values(PaymentStatus), name="entitlement_payment_status"),
        default=PaymentStatus.PENDING.value,
        index=True,
    )

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[int | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[int | None] = mapped_column(nullable=True)

    # Immutable copy of the plan/service at purchase time
    plan_snapshot: Mapped[JSONDict] = mapped_column(JSON, default=dict)
    # "metadata" is reserved on declarative classes
    meta: Mapped[JSONDict] = mapped_column("metadata", JSON, default=dict)

    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int | None] = mapped_column(nullable=True)

    @validates("phone")
    def _normalize_phone(self, key: str, value: str) -> str:
        return normalize_phone(value)

    # ------------------------------------------------------------------
    # lifetime semantics differ per entitlement kind
    # ------------------------------------------------------------------

    @property
    def lifetime(self) -> bool:
        raise NotImplementedError

    @classmethod
    def lifetime_clause(cls) -> ColumnElement[bool]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # SQL predicates
    # ------------------------------------------------------------------

    @classmethod
    def active_clause(cls, now: datetime) -> ColumnElement[bool]:
        return and_(
            cls.is_deleted.is_(False),
            cls.status == EntitlementStatus.ACTIVE.value,
            cls.payment_status == PaymentStatus.SUCCESS.value,
            cls.start_date <= now,
            or_(cls.lifetime_clause(), cls.end_date > now),
        )

    @classmethod
    def expirable_clause(cls, now: datetime) -> ColumnElement[bool]:
        return and_(
            cls.is_deleted.is_(False),
            cls.status == EntitlementStatus.ACTIVE.value,
            cls.payment_status == PaymentStatus.SUCCESS.value,
            ~cls.lifetime_clause(),
            cls.end_date <= now,
        )

    @classmethod
    def longest_remaining_first(cls) -> tuple:
        return (cls.lifetime_clause().desc(), cls.end_date.desc())

    # ------------------------------------------------------------------
    # read-time predicates
    # ------------------------------------------------------------------

    def is_currently_active(self, now: datetime) -> bool:
        if (
            self.is_deleted
            or self.status != EntitlementStatus.ACTIVE
            or self.payment_status != PaymentStatus.SUCCESS
        ):
            return False

        start = as_utc_aware(self.start_date)
        if start is None or start > now:
            return False
        if self.lifetime:
            return True

        end = as_utc_aware(self.end_date)
        return end is not None and end > now

    def is_expired(self, now: datetime) -> bool:
        if self.is_deleted or self.status in TERMINAL_STATUSES:
            return False
        if self.lifetime:
            return False

        end = as_utc_aware(self.end_date)
        return end is not None and end <= now

    def days_remaining(self, now: datetime) -> float:
        if not self.is_currently_active(now):
            return 0
        if self.lifetime:
            return math.inf

        seconds = (as_utc_aware(self.end_date) - now).total_seconds()
        return max(0, math.ceil(seconds / DAY_SECONDS))

    def current_status(self, now: datetime) -> DisplayStatus:
        """Display label; precedence DELETED > terminal > PENDING > ACTIVE > UPCOMING > EXPIRED."""
        if self.is_deleted:
            return DisplayStatus.DELETED
        if self.status in TERMINAL_STATUSES:
            return DisplayStatus(self.status)
        if self.status == EntitlementStatus.PENDING or self.payment_status != PaymentStatus.SUCCESS:
            return DisplayStatus.PENDING

        start = as_utc_aware(self.start_date)
        started = start is not None and start <= now

        if self.lifetime:
            return DisplayStatus.ACTIVE if started else DisplayStatus.UPCOMING

        end = as_utc_aware(self.end_date)
        if end is None:
            # window never computed
            return DisplayStatus.UPCOMING
        if started and end > now:
            return DisplayStatus.ACTIVE
        if not started and end > now:
            return DisplayStatus.UPCOMING
        return DisplayStatus.EXPIRED
