from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, validates

from memberhub.db.base import Base, TimestampMixin
from memberhub.utils.phone import normalize_phone


class User(TimestampMixin, Base):
    """App account. Entitlements can exist before one is created."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    phone: Mapped[str] = mapped_column(String(10), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100), default="")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)

    @validates("phone")
    def _normalize_phone(self, key: str, value: str) -> str:
        return normalize_phone(value)


class Admin(TimestampMixin, Base):
    __tablename__ = "admins"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100), default="")
    password_hash: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
