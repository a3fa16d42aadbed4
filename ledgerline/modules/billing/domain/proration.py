"""
Proration for mid-cycle plan changes.

amount = max(0, (target_daily_rate - current_daily_rate) * remaining_days)

Both daily rates divide by the current period's length so plans with different
nominal billing cycles are compared on the same basis.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

SECONDS_PER_DAY = 86400
CENT = Decimal("0.01")


@dataclass(frozen=True)
class ProrationQuote:
    amount: Decimal
    remaining_days: int
    total_period_days: int
    current_daily_rate: Decimal
    target_daily_rate: Decimal

    @property
    def is_free(self) -> bool:
        return self.amount <= 0


def _ceil_days(seconds: float) -> int:
    return math.ceil(seconds / SECONDS_PER_DAY)


class ProrationCalculator:
    """Pure calculator; holds no state and performs no I/O."""

    def quote(
        self,
        current_price: Decimal,
        target_price: Decimal,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> ProrationQuote:
        total_days = max(_ceil_days((period_end - period_start).total_seconds()), 1)
        remaining_days = _ceil_days((period_end - now).total_seconds())
        remaining_days = min(max(remaining_days, 0), total_days)

        current_daily = Decimal(current_price) / total_days
        target_daily = Decimal(target_price) / total_days

        raw = (target_daily - current_daily) * remaining_days
        amount = max(Decimal("0"), raw).quantize(CENT, rounding=ROUND_HALF_UP)

        return ProrationQuote(
            amount=amount,
            remaining_days=remaining_days,
            total_period_days=total_days,
            current_daily_rate=current_daily,
            target_daily_rate=target_daily,
        )
