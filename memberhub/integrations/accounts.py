from typing import Protocol

from sqlalchemy.orm import Session

from memberhub.models.user import User
from memberhub.utils.phone import normalize_phone


class AccountLookup(Protocol):
    def find_by_phone(self, phone: str) -> User | None: ...


class SqlAccountLookup:
    def __init__(self, db: Session):
        self.db = db

    def find_by_phone(self, phone: str) -> User | None:
        phone = normalize_phone(phone)
        if not phone:
            return None
        return (
            self.db.query(User)
            .filter(User.phone == phone, User.is_deleted.is_(False))
            .first()
        )
