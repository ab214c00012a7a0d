from memberhub.models.club import Club, ClubJoinRequest, ClubMember
from memberhub.models.entitlement import (
    DisplayStatus,
    EntitlementStatus,
    PaymentStatus,
    PurchaseMethod,
)
from memberhub.models.membership import UserMembership
from memberhub.models.payment import Payment, PaymentType
from memberhub.models.plan import MembershipPlan, Service
from memberhub.models.requests import MembershipRequest, RequestStatus, ServiceRequest
from memberhub.models.subscription import UserServiceSubscription
from memberhub.models.user import Admin, User

__all__ = [
    "Admin",
    "Club",
    "ClubJoinRequest",
    "ClubMember",
    "DisplayStatus",
    "EntitlementStatus",
    "MembershipPlan",
    "MembershipRequest",
    "Payment",
    "PaymentStatus",
    "PaymentType",
    "PurchaseMethod",
    "RequestStatus",
    "Service",
    "ServiceRequest",
    "User",
    "UserMembership",
    "UserServiceSubscription",
]
