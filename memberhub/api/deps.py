from datetime import datetime

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from memberhub.core.clock import Clock, get_clock
from memberhub.core.config import settings
from memberhub.core.security import decode_token
from memberhub.db.session import get_db
from memberhub.integrations.coupons import CouponValidator, DisabledCouponValidator
from memberhub.integrations.gateway import MercadoPagoGateway, PaymentGateway
from memberhub.integrations.notifications import NotificationSender, default_notifier
from memberhub.models.user import Admin

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_admin(
        creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
        db: Session = Depends(get_db)
) -> Admin:
    if creds is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    sub = payload.get("sub")
    if not sub or payload.get("role") != "admin":
        raise HTTPException(status_code=401, detail="Invalid token")

    admin = db.get(Admin, int(sub))
    if not admin or not admin.is_active:
        raise HTTPException(status_code=401, detail="Admin not found or disabled")
    return admin


def get_now(clock: Clock = Depends(get_clock)) -> datetime:
    return clock.now()


def get_gateway() -> PaymentGateway:
    return MercadoPagoGateway(currency=settings.currency)


def get_notifier() -> NotificationSender:
    return default_notifier()


def get_coupon_validator() -> CouponValidator:
    return DisabledCouponValidator()
