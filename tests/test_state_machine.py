from datetime import timedelta
from decimal import Decimal

import pytest

from subscription_engine.core import state_machine as sm
from subscription_engine.core.state_machine import GRACE_WINDOW
from subscription_engine.exceptions import InvalidTransitionError
from subscription_engine.models import IntentKind, PaymentMethod, Period, SubscriptionStatus as S

from builders import NOW, make_plan, make_record

ALL_STATUSES = list(S)


@pytest.mark.parametrize("status", ALL_STATUSES)
@pytest.mark.parametrize("offset_days", [-30, -8, -7, -1, 0, 1, 14])
def test_advance_time_is_idempotent(status, offset_days):
    """Ticking twice with the same `now` gives the same record as ticking once."""
    record = make_record(status, period_end=NOW + timedelta(days=offset_days))

    once = sm.advance_time(record, NOW).record
    twice = sm.advance_time(once, NOW)

    assert twice.record == once
    assert not twice.changed


def test_expired_trial_without_payment_expires():
    # --- ARRANGE ---
    record = make_record(S.trialing, period_end=NOW - timedelta(days=1))

    # --- ACT ---
    result = sm.advance_time(record, NOW)

    # --- ASSERT ---
    assert result.record.status is S.expired
    assert [i.kind for i in result.intents] == [IntentKind.trial_expired]


def test_expired_trial_with_payment_on_file_converts():
    record = make_record(S.trialing, period_end=NOW - timedelta(hours=1))

    result = sm.advance_time(record, NOW, payment_on_file=True)

    assert result.record.status is S.active
    assert result.record.current_period_start == record.trial_end
    assert result.record.current_period_end == record.trial_end + timedelta(days=30)
    assert result.intents[0].kind is IntentKind.trial_converted


def test_lapsed_period_goes_past_due_and_stays_there_a_second_later():
    """First tick: past_due. Second tick one second later: unchanged, grace not restarted."""
    record = make_record(S.active, period_end=NOW - timedelta(days=1))

    first = sm.advance_time(record, NOW)
    second = sm.advance_time(first.record, NOW + timedelta(seconds=1))

    assert first.record.status is S.past_due
    assert first.record.grace_period_end == record.current_period_end + GRACE_WINDOW
    assert second.record == first.record
    assert not second.changed


def test_past_due_without_grace_end_enters_grace_with_exact_window():
    record = make_record(S.past_due, period_end=NOW - timedelta(days=2))

    result = sm.advance_time(record, NOW)

    assert result.record.status is S.grace_period
    assert result.record.grace_period_end - result.record.current_period_end == timedelta(days=7)


def test_grace_window_elapsed_expires_and_clears_grace():
    end = NOW - timedelta(days=8)
    record = make_record(S.grace_period, period_end=end, grace_period_end=end + GRACE_WINDOW)

    result = sm.advance_time(record, NOW)

    assert result.record.status is S.expired
    assert result.record.grace_period_end is None


def test_pending_payment_expires_after_payment_window():
    record = make_record(S.pending_payment, next_billing_date=NOW - timedelta(minutes=1))

    result = sm.advance_time(record, NOW)

    assert result.record.status is S.expired
    assert result.intents[-1].kind is IntentKind.payment_window_closed


def test_stale_grace_end_on_active_record_is_cleared():
    """Corrupt combinations heal instead of raising."""
    record = make_record(S.active, grace_period_end=NOW + timedelta(days=3))

    result = sm.advance_time(record, NOW)

    assert result.record.status is S.active
    assert result.record.grace_period_end is None
    assert result.intents[0].kind is IntentKind.state_repaired


def test_grace_record_with_wrong_grace_end_is_realigned():
    record = make_record(S.grace_period, period_end=NOW - timedelta(days=1), grace_period_end=None)

    healed = sm.heal(record).record

    assert healed.grace_period_end == record.current_period_end + GRACE_WINDOW


def test_payment_success_extends_and_never_shortens():
    record = make_record(S.active, period_end=NOW + timedelta(days=10))
    earlier = Period(start=NOW - timedelta(days=20), end=NOW + timedelta(days=5))
    later = Period(start=record.current_period_end, end=record.current_period_end + timedelta(days=30))

    unchanged = sm.apply_payment_success(record, earlier, NOW)
    extended = sm.apply_payment_success(record, later, NOW)

    assert unchanged.record.current_period_end == record.current_period_end
    assert extended.record.current_period_end == later.end
    assert extended.record.current_period_start == record.current_period_start
    assert extended.record.next_billing_date == later.end


def test_payment_success_reactivates_grace_record():
    end = NOW - timedelta(days=2)
    record = make_record(S.grace_period, period_end=end, grace_period_end=end + GRACE_WINDOW)
    covered = Period(start=end, end=end + timedelta(days=30))

    result = sm.apply_payment_success(record, covered, NOW, manual=True)

    assert result.record.status is S.active
    assert result.record.grace_period_end is None
    assert result.record.manual_paid_through == covered.end
    assert result.intents[0].kind is IntentKind.payment_applied


def test_payment_success_on_canceled_is_a_no_op():
    record = make_record(S.canceled)
    covered = Period(start=NOW, end=NOW + timedelta(days=30))

    result = sm.apply_payment_success(record, covered, NOW)

    assert result.record == record


@pytest.mark.parametrize("status", [S.canceled, S.expired, S.past_due, S.grace_period, S.trialing, S.pending_payment])
def test_payment_failure_only_moves_active(status):
    record = make_record(status)

    result = sm.apply_payment_failure(record)

    assert result.record == record
    assert not result.changed


def test_payment_failure_on_active_goes_past_due():
    result = sm.apply_payment_failure(make_record(S.active))

    assert result.record.status is S.past_due


def test_change_plan_upgrade_bills_the_prorated_delta():
    """10000 -> 20000 monthly with 15 days left charges 5000 and keeps the period end."""
    record = make_record(S.active, period_end=NOW + timedelta(days=15))
    new_plan = make_plan("20000", name="Professional")

    result = sm.change_plan(record, new_plan, NOW)

    assert result.charge == Decimal("5000")
    assert result.record.plan == new_plan
    assert result.record.current_period_end == record.current_period_end
    assert result.payment_request.amount == Decimal("5000")
    assert result.payment_request.payment_method is PaymentMethod.proration
    assert result.payment_request.period.end == record.current_period_end


def test_change_plan_downgrade_has_no_charge_and_no_request():
    record = make_record(S.active, period_end=NOW + timedelta(days=15))

    result = sm.change_plan(record, make_plan("5000", name="Lite"), NOW)

    assert result.charge == Decimal("0")
    assert result.payment_request is None


def test_change_plan_during_trial_is_free():
    record = make_record(S.trialing, period_end=NOW + timedelta(days=5))

    result = sm.change_plan(record, make_plan("40000", name="Enterprise"), NOW)

    assert result.charge == 0
    assert result.payment_request is None
    assert result.record.status is S.trialing


@pytest.mark.parametrize("status", [S.canceled, S.expired, S.pending_payment])
def test_change_plan_rejected_outside_live_statuses(status):
    with pytest.raises(InvalidTransitionError):
        sm.change_plan(make_record(status), make_plan("20000"), NOW)


def test_cancel_is_idempotent():
    first = sm.cancel(make_record(S.active), NOW, "too expensive")
    second = sm.cancel(first.record, NOW + timedelta(days=1))

    assert first.record.status is S.canceled
    assert first.record.canceled_at == NOW
    assert second.record == first.record


def test_new_subscription_trial_and_purchase():
    plan = make_plan(trial_days=14)
    tenant = make_record().tenant_id

    trial = sm.new_subscription(tenant, plan, NOW)
    purchase = sm.new_subscription(tenant, plan, NOW, start_as_trial=False)

    assert trial.status is S.trialing
    assert trial.trial_end == NOW + timedelta(days=14)
    assert trial.reference_expiry == trial.trial_end
    assert purchase.status is S.pending_payment
    assert purchase.next_billing_date == NOW + timedelta(days=7)


def test_describe_grace_countdown_keeps_access():
    end = NOW - timedelta(days=1)
    record = make_record(S.grace_period, period_end=end, grace_period_end=end + GRACE_WINDOW)

    view = sm.describe(record, NOW)

    assert view.has_access
    assert view.grace.in_grace
    assert view.grace.days_remaining == 6
    assert view.days_until_expiry == -1


def test_pick_current_prefers_latest_then_larger_id():
    old = make_record(S.canceled, created_at=NOW - timedelta(days=40))
    new = make_record(S.trialing, created_at=NOW)

    assert sm.pick_current([old, new]) == new
    assert sm.pick_current([]) is None
