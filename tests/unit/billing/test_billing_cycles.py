from datetime import datetime, timezone

import pytest

from ledgerline.models.pricing import BillingCycle
from ledgerline.modules.billing.domain.cycles import add_months, calculate_period_end


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_monthly_adds_one_calendar_month():
    assert calculate_period_end(utc(2026, 3, 15, 9, 30), BillingCycle.MONTHLY) == utc(2026, 4, 15, 9, 30)


def test_annual_adds_one_year():
    assert calculate_period_end(utc(2026, 3, 15), BillingCycle.ANNUAL) == utc(2027, 3, 15)


def test_quarterly_adds_three_months():
    assert calculate_period_end(utc(2026, 11, 30), BillingCycle.QUARTERLY) == utc(2027, 2, 28)


@pytest.mark.parametrize("start, expected", [
    (utc(2026, 1, 31), utc(2026, 2, 28)),
    (utc(2028, 1, 31), utc(2028, 2, 29)),
    (utc(2026, 12, 31), utc(2027, 1, 31)),
])
def test_month_end_is_clamped(start, expected):
    assert add_months(start, 1) == expected


def test_leap_day_annual_clamps_to_feb_28():
    assert calculate_period_end(utc(2028, 2, 29), "annual") == utc(2029, 2, 28)


@pytest.mark.parametrize("raw, cycle", [
    ("monthly", BillingCycle.MONTHLY),
    ("Yearly", BillingCycle.ANNUAL),
    ("annual", BillingCycle.ANNUAL),
    ("weekly", BillingCycle.MONTHLY),
    ("", BillingCycle.MONTHLY),
])
def test_cycle_parsing(raw, cycle):
    assert BillingCycle.parse(raw) is cycle
