# tests/builders.py
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from subscription_engine.models import BillingInterval, Feature, PlanSnapshot, SubscriptionRecord, SubscriptionStatus

NOW = datetime(2025, 1, 16, 12, 0, tzinfo=timezone.utc)


def make_plan(price="10000", interval=BillingInterval.monthly, name="Starter", currency="RWF",
              trial_days=14) -> PlanSnapshot:
    return PlanSnapshot(
        plan_id=uuid4(),
        name=name,
        price=Decimal(price),
        currency=currency,
        interval=interval,
        trial_days=trial_days,
        features=[Feature.qr_code_generation, Feature.menu_images],
    )


def make_record(status=SubscriptionStatus.active, *, now=NOW, period_end=None, **fields) -> SubscriptionRecord:
    period_end = period_end or now + timedelta(days=15)
    values = dict(
        tenant_id=uuid4(),
        plan=make_plan(),
        status=status,
        current_period_start=period_end - timedelta(days=30),
        current_period_end=period_end,
        next_billing_date=period_end,
        created_at=period_end - timedelta(days=30),
    )
    if status is SubscriptionStatus.trialing:
        values["trial_start"] = values["current_period_start"]
        values["trial_end"] = period_end
    values.update(fields)
    return SubscriptionRecord(**values)
