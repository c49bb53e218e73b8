from .dates import days_until, calendar_day
from .proration import calculate_proration, prorate_plan_change, round_money
from .state_machine import (
    GRACE_WINDOW_DAYS,
    advance_time,
    apply_payment_success,
    apply_payment_failure,
    change_plan,
    cancel,
    new_subscription,
    grace_countdown,
    describe,
    pick_current,
)
from .reminders import evaluate_reminder, DEFAULT_THRESHOLDS

__all__ = [
    "days_until", "calendar_day",
    "calculate_proration", "prorate_plan_change", "round_money",
    "GRACE_WINDOW_DAYS", "advance_time", "apply_payment_success", "apply_payment_failure",
    "change_plan", "cancel", "new_subscription", "grace_countdown", "describe", "pick_current",
    "evaluate_reminder", "DEFAULT_THRESHOLDS",
]
