"""Refund proration for partially used billing periods."""
from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Optional, Union

from .models import BillingCycle

Amount = Union[Decimal, int, str]

MONTHLY_PERIOD_DAYS = 30
YEARLY_PERIOD_DAYS = 365
_CENT = Decimal("0.01")
_ONE_DAY = timedelta(days=1)


def total_period_days(billing_cycle: BillingCycle) -> int:
    return YEARLY_PERIOD_DAYS if billing_cycle == BillingCycle.YEARLY else MONTHLY_PERIOD_DAYS


def infer_billing_cycle(period_start: datetime, period_end: datetime) -> BillingCycle:
    """Guess the cycle from the period length when the caller does not know it."""

    if period_end - period_start > timedelta(days=60):
        return BillingCycle.YEARLY
    return BillingCycle.MONTHLY


def days_remaining(period_end: datetime, now: datetime) -> int:
    """Whole days left in the period, counting a partial day as a full one."""

    return math.ceil((period_end - now) / _ONE_DAY)


def prorate(
    current_period_start: datetime,
    current_period_end: datetime,
    now: datetime,
    period_amount: Amount,
    *,
    billing_cycle: Optional[BillingCycle] = None,
) -> Decimal:
    """Return the refundable share of ``period_amount`` for the unused time.

    The result is zero once the period has ended, the full amount when the
    period has not started yet and never increases as ``now`` advances. An
    empty or inverted period has nothing left to refund.
    Intermediate values are truncated to cents so a refund never exceeds
    what was paid.
    """

    amount = Decimal(period_amount)
    if amount < 0:
        raise ValueError("period_amount must not be negative")
    if now >= current_period_end:
        return Decimal("0")
    if now <= current_period_start:
        return amount

    cycle = billing_cycle or infer_billing_cycle(current_period_start, current_period_end)
    total_days = total_period_days(cycle)
    remaining = min(max(0, days_remaining(current_period_end, now)), total_days)
    refund = amount * Decimal(remaining) / Decimal(total_days)
    return min(amount, refund.quantize(_CENT, rounding=ROUND_DOWN))


__all__ = [
    "MONTHLY_PERIOD_DAYS",
    "YEARLY_PERIOD_DAYS",
    "days_remaining",
    "infer_billing_cycle",
    "prorate",
    "total_period_days",
]
