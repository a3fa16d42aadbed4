from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ledgerline.models.subscription import DiscountType


@dataclass(frozen=True)
class Coupon:
    code: str
    discount_type: DiscountType
    value: Decimal


COUPONS = {
    "WELCOME10": Coupon("WELCOME10", DiscountType.PERCENTAGE, Decimal("10")),
    "SAVE20": Coupon("SAVE20", DiscountType.PERCENTAGE, Decimal("20")),
    "FIRST50": Coupon("FIRST50", DiscountType.FIXED, Decimal("50")),
}


def find_coupon(code: str) -> Optional[Coupon]:
    """Case-insensitive lookup in the fixed coupon table."""
    return COUPONS.get((code or "").strip().upper())
