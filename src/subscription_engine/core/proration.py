# subscription_engine/core/proration.py

from __future__ import annotations
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from subscription_engine.models.plan import BillingInterval, PlanSnapshot
from .dates import days_until

# ISO 4217 currencies without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def smallest_unit(currency: str) -> Decimal:
    return Decimal("1") if currency.upper() in ZERO_DECIMAL_CURRENCIES else Decimal("0.01")


def round_money(amount: Decimal, currency: str) -> Decimal:
    return amount.quantize(smallest_unit(currency), rounding=ROUND_HALF_UP)


def calculate_proration(
    old_price: Decimal,
    old_interval: BillingInterval,
    new_price: Decimal,
    new_interval: BillingInterval,
    now: datetime,
    period_end: datetime,
    currency: str,
) -> Decimal:
    """
    Net charge for switching plans at `now` with the period ending at `period_end`.

    Credit for the unused part of the old plan is subtracted from the cost of the
    new plan over the same days. Never negative: downgrades are not refunded.
    Rounded once, at the end.
    """
    days = Decimal(max(0, days_until(period_end, now)))
    unused_credit = Decimal(old_price) * days / old_interval.nominal_days
    new_charge = Decimal(new_price) * days / new_interval.nominal_days
    delta = max(Decimal(0), new_charge - unused_credit)
    return round_money(delta, currency)


def prorate_plan_change(old: PlanSnapshot, new: PlanSnapshot, now: datetime, period_end: datetime) -> Decimal:
    return calculate_proration(
        old_price=old.price,
        old_interval=old.interval,
        new_price=new.price,
        new_interval=new.interval,
        now=now,
        period_end=period_end,
        currency=new.currency,
    )
