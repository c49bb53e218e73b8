from datetime import timedelta

import pytest

from subscription_engine.core.dates import calendar_day, days_until
from subscription_engine.core.reminders import evaluate_reminder
from subscription_engine.models import ReminderReason, SubscriptionStatus as S

from builders import NOW, make_record


@pytest.mark.parametrize("days_left", [14, 7, 3, 1])
def test_reminder_fires_on_thresholds(days_left):
    record = make_record(S.active, period_end=NOW + timedelta(days=days_left))

    intent = evaluate_reminder(record, NOW, already_notified_today=False)

    assert intent is not None
    assert intent.threshold_days == days_left
    assert intent.reason_code is ReminderReason.subscription_expiring
    assert intent.tenant_id == record.tenant_id


@pytest.mark.parametrize("days_left", [15, 10, 5, 2, 0, -1])
def test_no_reminder_between_thresholds(days_left):
    record = make_record(S.active, period_end=NOW + timedelta(days=days_left))

    assert evaluate_reminder(record, NOW, already_notified_today=False) is None


def test_trial_uses_trial_end_and_trial_reason():
    record = make_record(S.trialing, period_end=NOW + timedelta(days=30), trial_end=NOW + timedelta(days=3))

    intent = evaluate_reminder(record, NOW, already_notified_today=False)

    assert intent.threshold_days == 3
    assert intent.reason_code is ReminderReason.trial_expiring


def test_seven_day_reminder_at_most_once_per_day():
    """Crossing the 7-day threshold repeatedly in one day yields one reminder."""
    record = make_record(S.active, period_end=NOW + timedelta(days=7))
    notified_days = set()
    emitted = []

    for minutes in range(0, 6 * 60, 30):
        now = NOW + timedelta(minutes=minutes)
        day = calendar_day(now)
        intent = evaluate_reminder(record, now, already_notified_today=day in notified_days)
        if intent is not None:
            notified_days.add(day)
            emitted.append(intent)

    assert [i.threshold_days for i in emitted] == [7]


@pytest.mark.parametrize("status", [S.past_due, S.grace_period, S.expired, S.canceled, S.pending_payment])
def test_no_reminders_outside_trial_and_active(status):
    record = make_record(status, period_end=NOW + timedelta(days=7))

    assert evaluate_reminder(record, NOW, already_notified_today=False) is None


def test_custom_thresholds():
    record = make_record(S.active, period_end=NOW + timedelta(days=30))

    assert evaluate_reminder(record, NOW, already_notified_today=False, thresholds=[30]).threshold_days == 30


def test_days_until_rounds_up():
    assert days_until(NOW + timedelta(days=2, seconds=1), NOW) == 3
    assert days_until(NOW, NOW) == 0
    assert days_until(NOW - timedelta(hours=30), NOW) == -1


def test_calendar_day_respects_timezone():
    late_evening_utc = NOW.replace(hour=23, minute=30)

    assert calendar_day(late_evening_utc, "UTC") == late_evening_utc.date()
    assert calendar_day(late_evening_utc, "Africa/Kigali") == late_evening_utc.date() + timedelta(days=1)
