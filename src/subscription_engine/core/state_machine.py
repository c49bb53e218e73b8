# subscription_engine/core/state_machine.py
"""
Subscription state machine.

Every function here is pure: it takes a SubscriptionRecord (plus inputs) and
returns a TransitionResult holding the new record and the intents the caller
should act on. Nothing is persisted or sent from this module.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple
from uuid import UUID

from subscription_engine.exceptions import InvalidTransitionError
from subscription_engine.models.payment import PaymentMethod, PaymentRequestCreate, PlanChangeResult
from subscription_engine.models.plan import PlanSnapshot
from subscription_engine.models.status import SubscriptionStatus, grants_access
from subscription_engine.models.subscription import (
    GraceCountdown,
    IntentKind,
    Period,
    SubscriptionRecord,
    SubscriptionView,
    TransitionIntent,
    TransitionResult,
)
from .dates import as_utc, days_until
from .proration import prorate_plan_change, round_money

S = SubscriptionStatus

GRACE_WINDOW_DAYS = 7
GRACE_WINDOW = timedelta(days=GRACE_WINDOW_DAYS)
PAYMENT_WINDOW = timedelta(days=7)

# Statuses in which grace_period_end may be set.
_GRACE_STATUSES = frozenset({S.past_due, S.grace_period, S.expired})
# Statuses from which a plan change can be requested.
_PLAN_CHANGE_STATUSES = frozenset({S.trialing, S.active, S.past_due, S.grace_period})
# Upper bound on rule applications in one advance_time call; the longest chain is 4.
_MAX_STEPS = 8


def _intent(kind: IntentKind, before: SubscriptionRecord, after: SubscriptionRecord,
            detail: Optional[str] = None) -> TransitionIntent:
    return TransitionIntent(
        kind=kind,
        subscription_id=before.id,
        tenant_id=before.tenant_id,
        from_status=before.status,
        to_status=after.status,
        detail=detail,
    )


def _period_length(plan: PlanSnapshot) -> timedelta:
    return timedelta(days=plan.interval.nominal_days)


def heal(record: SubscriptionRecord, grace_window: timedelta = GRACE_WINDOW) -> TransitionResult:
    """Repairs field combinations the state machine never produces itself."""
    fixes = {}
    expected_grace_end = record.current_period_end + grace_window

    if record.grace_period_end is not None and record.status not in _GRACE_STATUSES:
        fixes["grace_period_end"] = None
    elif record.status is S.grace_period and record.grace_period_end != expected_grace_end:
        fixes["grace_period_end"] = expected_grace_end
    elif (record.status is S.past_due and record.grace_period_end is not None
          and record.grace_period_end != expected_grace_end):
        fixes["grace_period_end"] = expected_grace_end

    if record.status is S.trialing and record.trial_end is None:
        fixes["trial_end"] = record.current_period_end

    if not fixes:
        return TransitionResult(record=record)
    healed = record.evolve(**fixes)
    detail = ",".join(sorted(fixes))
    return TransitionResult(record=healed, intents=[_intent(IntentKind.state_repaired, record, healed, detail)])


def _step(record: SubscriptionRecord, now: datetime, payment_on_file: bool,
          grace_window: timedelta) -> Optional[Tuple[SubscriptionRecord, IntentKind]]:
    status = record.status

    if status is S.trialing and now >= record.trial_end:
        if payment_on_file:
            start = record.trial_end
            end = start + _period_length(record.plan)
            return record.evolve(
                status=S.active,
                current_period_start=start,
                current_period_end=end,
                next_billing_date=end,
            ), IntentKind.trial_converted
        return record.evolve(status=S.expired, next_billing_date=None), IntentKind.trial_expired

    if status is S.active and now >= record.current_period_end:
        # The grace window starts at the lapse; later ticks must not restart it.
        return record.evolve(
            status=S.past_due,
            grace_period_end=record.current_period_end + grace_window,
        ), IntentKind.period_lapsed

    if status is S.past_due and record.grace_period_end is None:
        return record.evolve(
            status=S.grace_period,
            grace_period_end=record.current_period_end + grace_window,
        ), IntentKind.grace_started

    if status in (S.past_due, S.grace_period) and now >= record.grace_period_end:
        return record.evolve(status=S.expired, grace_period_end=None,
                             next_billing_date=None), IntentKind.grace_expired

    if status is S.pending_payment:
        due = record.next_billing_date or record.current_period_end
        if now >= due:
            return record.evolve(status=S.expired, next_billing_date=None), IntentKind.payment_window_closed

    return None


def advance_time(
    record: SubscriptionRecord,
    now: datetime,
    *,
    payment_on_file: Optional[bool] = None,
    grace_window: timedelta = GRACE_WINDOW,
) -> TransitionResult:
    """
    Applies the time-based rules until nothing changes.

    Running to a fixed point makes the function idempotent:
    advance_time(advance_time(r, now).record, now) leaves the record untouched.
    """
    now = as_utc(now)
    if payment_on_file is None:
        payment_on_file = record.payment_on_file

    healed = heal(record, grace_window)
    current = healed.record
    intents: List[TransitionIntent] = list(healed.intents)

    for _ in range(_MAX_STEPS):
        stepped = _step(current, now, payment_on_file, grace_window)
        if stepped is None:
            break
        nxt, kind = stepped
        intents.append(_intent(kind, current, nxt))
        current = nxt

    return TransitionResult(record=current, intents=intents)


def apply_payment_success(
    record: SubscriptionRecord,
    covered_period: Period,
    now: datetime,
    *,
    manual: bool = False,
) -> TransitionResult:
    """
    Credits a successful payment (manual approval or provider invoice).

    The period end only ever moves forward, so replaying the same payment or
    paying early converges instead of resetting the period.
    """
    if record.status is S.canceled:
        return TransitionResult(record=record)

    now = as_utc(now)
    covered_end = as_utc(covered_period.end)
    new_end = max(record.current_period_end, covered_end)
    if record.status is S.active:
        new_start = record.current_period_start
    else:
        new_start = min(as_utc(covered_period.start), new_end - timedelta(seconds=1))

    changes = dict(
        status=S.active,
        current_period_start=new_start,
        current_period_end=new_end,
        next_billing_date=new_end,
        grace_period_end=None,
        last_payment_at=max(record.last_payment_at or now, now),
    )
    if manual:
        changes["manual_paid_through"] = max(record.manual_paid_through or covered_end, covered_end)

    updated = record.evolve(**changes)
    moved = (updated.status is not record.status
             or updated.current_period_end != record.current_period_end
             or record.grace_period_end is not None)
    intents = [_intent(IntentKind.payment_applied, record, updated, "manual" if manual else "provider")] if moved else []
    return TransitionResult(record=updated, intents=intents)


def apply_payment_failure(record: SubscriptionRecord) -> TransitionResult:
    """active -> past_due. Everything else is left alone (failures never un-cancel or re-fail)."""
    if record.status is not S.active:
        return TransitionResult(record=record)
    updated = record.evolve(status=S.past_due, grace_period_end=None)
    return TransitionResult(record=updated, intents=[_intent(IntentKind.payment_failed, record, updated)])


def change_plan(record: SubscriptionRecord, new_plan: PlanSnapshot, now: datetime) -> PlanChangeResult:
    """
    Swaps the plan snapshot mid-period.

    The period end stays where it is; only the amount owed changes. A positive
    prorated delta comes back as a payment request draft. Zero or negative
    deltas (downgrades) are not refunded.
    """
    if record.status not in _PLAN_CHANGE_STATUSES:
        raise InvalidTransitionError(
            f"Cannot change plan of subscription {record.id} in status '{record.status.value}'"
        )
    now = as_utc(now)

    if record.status is S.trialing:
        # Nothing has been paid during a trial, so there is nothing to prorate.
        charge = round_money(Decimal(0), new_plan.currency)
    else:
        charge = prorate_plan_change(record.plan, new_plan, now, record.current_period_end)

    updated = record.evolve(plan=new_plan)
    draft = None
    if charge > 0:
        draft = PaymentRequestCreate(
            tenant_id=record.tenant_id,
            subscription_id=record.id,
            amount=charge,
            currency=new_plan.currency,
            period=Period(start=now, end=record.current_period_end),
            due_date=now,
            payment_method=PaymentMethod.proration,
            description=f"Prorated upgrade from {record.plan.name} to {new_plan.name}",
        )
    return PlanChangeResult(record=updated, charge=charge, payment_request=draft)


def cancel(record: SubscriptionRecord, now: datetime, reason: Optional[str] = None) -> TransitionResult:
    if record.status is S.canceled:
        return TransitionResult(record=record)
    updated = record.evolve(
        status=S.canceled,
        canceled_at=as_utc(now),
        cancellation_reason=reason,
        grace_period_end=None,
        next_billing_date=None,
    )
    return TransitionResult(record=updated, intents=[_intent(IntentKind.canceled, record, updated, reason)])


def new_subscription(
    tenant_id: UUID,
    plan: PlanSnapshot,
    now: datetime,
    *,
    start_as_trial: bool = True,
    trial_days: Optional[int] = None,
    payment_window: timedelta = PAYMENT_WINDOW,
) -> SubscriptionRecord:
    """
    Builds a fresh record: a trial, or a purchase waiting for its first payment.
    Resubscribing after cancellation goes through here too; old records are never revived.
    """
    now = as_utc(now)
    days = plan.trial_days if trial_days is None else trial_days
    if start_as_trial and days > 0:
        trial_end = now + timedelta(days=days)
        return SubscriptionRecord(
            tenant_id=tenant_id,
            plan=plan,
            status=S.trialing,
            trial_start=now,
            trial_end=trial_end,
            current_period_start=now,
            current_period_end=trial_end,
            next_billing_date=trial_end,
            created_at=now,
        )
    return SubscriptionRecord(
        tenant_id=tenant_id,
        plan=plan,
        status=S.pending_payment,
        current_period_start=now,
        current_period_end=now + _period_length(plan),
        next_billing_date=now + payment_window,
        created_at=now,
    )


def grace_countdown(record: SubscriptionRecord, now: datetime) -> GraceCountdown:
    now = as_utc(now)
    end = record.grace_period_end
    if record.status not in (S.past_due, S.grace_period) or end is None or now >= end:
        return GraceCountdown(in_grace=False)
    remaining = end - now
    return GraceCountdown(
        in_grace=True,
        grace_period_end=end,
        days_remaining=remaining.days,
        hours_remaining=remaining.seconds // 3600,
        reason=record.status.value,
    )


def describe(record: SubscriptionRecord, now: datetime) -> SubscriptionView:
    return SubscriptionView(
        subscription=record,
        has_access=grants_access(record.status),
        days_until_expiry=days_until(record.reference_expiry, now),
        grace=grace_countdown(record, now),
    )


def pick_current(records: Iterable[SubscriptionRecord]) -> Optional[SubscriptionRecord]:
    """The most recently created record is the current one; ties go to the larger id."""
    records = list(records)
    if not records:
        return None
    return max(records, key=lambda r: (as_utc(r.created_at), str(r.id)))
