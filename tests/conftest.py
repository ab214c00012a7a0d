"""Pytest configuration and fixtures."""
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import memberhub.models  # noqa: F401
from memberhub.api.deps import get_coupon_validator, get_gateway, get_notifier
from memberhub.core.clock import FrozenClock, get_clock
from memberhub.core.errors import ExternalServiceError, NotificationError
from memberhub.core.security import create_access_token, hash_password
from memberhub.db.base import Base
from memberhub.db.session import get_db
from memberhub.integrations.coupons import CouponResult
from memberhub.integrations.gateway import GatewayOrder, PaymentLink
from memberhub.integrations.notifications import NotificationResult
from memberhub.main import create_app
from memberhub.models.club import Club
from memberhub.models.plan import MembershipPlan, Service
from memberhub.models.user import Admin, User

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
PHONE = "8085816197"


class FakeGateway:
    def __init__(self):
        self.fail = False
        self.links: list[dict] = []
        self.orders: list[dict] = []

    def create_order(self, amount_minor, currency, metadata):
        if self.fail:
            raise ExternalServiceError("Payment gateway is unavailable")
        self.orders.append({"amount_minor": amount_minor, "currency": currency, "metadata": metadata})
        return GatewayOrder(
            order_id=metadata["order_id"],
            status="created",
            gateway_ref=f"pref_{len(self.orders)}",
            checkout_url=f"https://pay.test/checkout/{len(self.orders)}",
        )

    def create_payment_link(self, amount_minor, customer, expires_at, metadata):
        if self.fail:
            raise ExternalServiceError("Payment gateway is unavailable")
        self.links.append(
            {"amount_minor": amount_minor, "customer": customer, "expires_at": expires_at, "metadata": metadata}
        )
        n = len(self.links)
        return PaymentLink(link_id=f"plink_{n}", short_url=f"https://pay.test/l/{n}", order_id=metadata["order_id"])


class FakeNotifier:
    def __init__(self):
        self.fail = False
        self.sent: list[dict] = []

    def send_payment_link(self, phone, email, amount, link, context):
        if self.fail:
            raise NotificationError("WhatsApp is down")
        self.sent.append({"phone": phone, "email": email, "amount": amount, "link": link, "context": context})
        return NotificationResult(sent=True, channel="fake")


class HalfOffCoupons:
    def validate(self, code, amount, phone, purchase_type):
        if code != "HALF":
            return CouponResult(is_valid=False, final_amount=amount, error="Unknown coupon")
        return CouponResult(is_valid=True, discount_amount=amount / 2, final_amount=amount / 2)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine) -> Session:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def coupons() -> HalfOffCoupons:
    return HalfOffCoupons()


@pytest.fixture
def plan(db) -> MembershipPlan:
    plan = MembershipPlan(name="Monthly", description="30 days", price=499.0, duration_in_days=30, perks=["events"])
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


@pytest.fixture
def lifetime_plan(db) -> MembershipPlan:
    plan = MembershipPlan(name="Lifetime", price=9999.0, duration_in_days=36500, is_lifetime=True)
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


@pytest.fixture
def service(db) -> Service:
    service = Service(name="Coaching", price=1000.0, duration_in_days=30, max_subscriptions=10)
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


@pytest.fixture
def lifetime_service(db) -> Service:
    service = Service(name="Library", price=500.0, duration_in_days=None)
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


@pytest.fixture
def user(db) -> User:
    user = User(phone=PHONE, name="Asha Rao")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def club(db) -> Club:
    club = Club(name="Readers", requires_approval=True)
    db.add(club)
    db.commit()
    db.refresh(club)
    return club


@pytest.fixture
def admin(db) -> Admin:
    admin = Admin(username="admin", name="Admin", password_hash=hash_password("secret"))
    db.add(admin)
    db.commit()
    db.refresh(admin)
    return admin


@pytest.fixture
def admin_headers(admin) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(admin.id))}"}


@pytest.fixture
def client(db, clock, gateway, notifier, coupons) -> TestClient:
    app = create_app()

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_coupon_validator] = lambda: coupons
    return TestClient(app)
