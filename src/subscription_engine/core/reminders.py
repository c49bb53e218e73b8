# subscription_engine/core/reminders.py

from __future__ import annotations
from datetime import datetime
from typing import Iterable, Optional

from subscription_engine.models.notification import ReminderIntent, ReminderReason
from subscription_engine.models.status import SubscriptionStatus
from subscription_engine.models.subscription import SubscriptionRecord
from .dates import days_until

DEFAULT_THRESHOLDS = (14, 7, 3, 1)

# Only records still counting down towards an expiry get reminders.
_REMINDABLE = frozenset({SubscriptionStatus.trialing, SubscriptionStatus.active})


def evaluate_reminder(
    record: SubscriptionRecord,
    now: datetime,
    *,
    already_notified_today: bool,
    thresholds: Iterable[int] = DEFAULT_THRESHOLDS,
) -> Optional[ReminderIntent]:
    """
    Decides whether `record` is due a reminder at `now`.

    Pure read-and-decide: returns the intent, never sends anything. The caller
    owns the "already notified today" bookkeeping.
    """
    if already_notified_today or record.status not in _REMINDABLE:
        return None
    remaining = days_until(record.reference_expiry, now)
    if remaining not in set(thresholds):
        return None
    reason = ReminderReason.trial_expiring if record.status.is_trial else ReminderReason.subscription_expiring
    return ReminderIntent(
        tenant_id=record.tenant_id,
        subscription_id=record.id,
        threshold_days=remaining,
        reason_code=reason,
    )
