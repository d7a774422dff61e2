"""
Interval calculator — renewal date arithmetic for tracked items and paid periods.

Usage:
    next_date = next_renewal(date(2024, 1, 31), RepeatInterval.monthly)
    # date(2024, 2, 29)
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from renewal_engine.models.enums import BillingCycle, RepeatInterval

# relativedelta clamps day-of-month overflow (Jan 31 + 1 month -> Feb 28/29).
_OFFSETS = {
    RepeatInterval.weekly: relativedelta(days=7),
    RepeatInterval.biweekly: relativedelta(days=14),
    RepeatInterval.semimonthly: relativedelta(days=15),
    RepeatInterval.monthly: relativedelta(months=1),
    RepeatInterval.bimonthly: relativedelta(months=2),
    RepeatInterval.quarterly: relativedelta(months=3),
    RepeatInterval.semiannually: relativedelta(months=6),
    RepeatInterval.yearly: relativedelta(years=1),
}

# Occurrences per month, used to express any cost as a monthly equivalent.
_MONTHLY_MULTIPLIERS = {
    RepeatInterval.weekly: Decimal(52) / Decimal(12),
    RepeatInterval.biweekly: Decimal(26) / Decimal(12),
    RepeatInterval.semimonthly: Decimal(2),
    RepeatInterval.monthly: Decimal(1),
    RepeatInterval.bimonthly: Decimal(1) / Decimal(2),
    RepeatInterval.quarterly: Decimal(1) / Decimal(3),
    RepeatInterval.semiannually: Decimal(1) / Decimal(6),
    RepeatInterval.yearly: Decimal(1) / Decimal(12),
    RepeatInterval.never: Decimal(0),
}

_CYCLE_OFFSETS = {
    BillingCycle.monthly: relativedelta(months=1),
    BillingCycle.annual: relativedelta(years=1),
}

_CENT = Decimal("0.01")

DateLike = Union[date, datetime]


def _coerce_interval(interval) -> RepeatInterval:
    try:
        return RepeatInterval(interval)
    except ValueError:
        raise ValueError(f"Unknown repeat interval: {interval!r}")


def next_renewal(anchor: DateLike, interval: RepeatInterval) -> Optional[DateLike]:
    """
    Return the renewal date following ``anchor``.

    ``never`` is terminal and returns None. Any value that is not a
    RepeatInterval raises ValueError.
    """
    interval = _coerce_interval(interval)
    if interval is RepeatInterval.never:
        return None
    return anchor + _OFFSETS[interval]


def is_recurring(interval: RepeatInterval) -> bool:
    return _coerce_interval(interval) is not RepeatInterval.never


def monthly_cost(cost: Decimal, interval: RepeatInterval) -> Decimal:
    multiplier = _MONTHLY_MULTIPLIERS[_coerce_interval(interval)]
    return (Decimal(cost) * multiplier).quantize(_CENT)


def yearly_cost(cost: Decimal, interval: RepeatInterval) -> Decimal:
    multiplier = _MONTHLY_MULTIPLIERS[_coerce_interval(interval)]
    return (Decimal(cost) * multiplier * 12).quantize(_CENT)


def billing_period_end(start: datetime, cycle: BillingCycle) -> datetime:
    """End of a paid-tier billing period starting at ``start``."""
    cycle = BillingCycle(cycle)
    if cycle not in _CYCLE_OFFSETS:
        raise ValueError(f"Billing cycle {cycle.value!r} has no period length")
    return start + _CYCLE_OFFSETS[cycle]
