"""Calendar-aware billing period arithmetic."""

from calendar import monthrange
from datetime import datetime

from ledgerline.models.pricing import BillingCycle

CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.ANNUAL: 12,
}


def add_months(start: datetime, months: int) -> datetime:
    """Adds calendar months, clamping the day to the target month's length (Jan 31 + 1 -> Feb 28/29)."""
    total_months = start.month - 1 + months
    year = start.year + total_months // 12
    month = total_months % 12 + 1
    day = min(start.day, monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calculate_period_end(start: datetime, cycle: BillingCycle | str) -> datetime:
    if not isinstance(cycle, BillingCycle):
        cycle = BillingCycle.parse(cycle)
    return add_months(start, CYCLE_MONTHS[cycle])
