from dataclasses import dataclass
from typing import Protocol


@dataclass
class CouponResult:
    is_valid: bool
    discount_amount: float = 0.0
    final_amount: float = 0.0
    error: str | None = None


class CouponValidator(Protocol):
    def validate(self, code: str, amount: float, phone: str, purchase_type: str) -> CouponResult: ...


class DisabledCouponValidator:
    """Coupons are not offered; every code is refused."""

    def validate(self, code: str, amount: float, phone: str, purchase_type: str) -> CouponResult:
        return CouponResult(
            is_valid=False,
            final_amount=amount,
            error=f"Coupon '{code}' is not valid",
        )
