# subscription_engine/models/status.py

from __future__ import annotations
from enum import Enum


class SubscriptionStatus(str, Enum):
    trialing = "trialing"
    active = "active"
    pending_payment = "pending_payment"
    past_due = "past_due"
    grace_period = "grace_period"
    expired = "expired"
    canceled = "canceled"

    @property
    def is_trial(self) -> bool:
        return self is SubscriptionStatus.trialing

    @property
    def is_terminal(self) -> bool:
        return self is SubscriptionStatus.canceled


class PaymentRequestStatus(str, Enum):
    pending = "pending"
    pending_approval = "pending_approval"
    approved = "approved"
    rejected = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentRequestStatus.approved, PaymentRequestStatus.rejected)


# The single mapping from legacy / provider spellings to the canonical status.
STATUS_SYNONYMS: dict[str, SubscriptionStatus] = {
    "trial": SubscriptionStatus.trialing,
    "trialing": SubscriptionStatus.trialing,
    "active": SubscriptionStatus.active,
    "pending": SubscriptionStatus.pending_payment,
    "pending_payment": SubscriptionStatus.pending_payment,
    "incomplete": SubscriptionStatus.pending_payment,
    "past_due": SubscriptionStatus.past_due,
    "unpaid": SubscriptionStatus.past_due,
    "grace": SubscriptionStatus.grace_period,
    "grace_period": SubscriptionStatus.grace_period,
    "expired": SubscriptionStatus.expired,
    "inactive": SubscriptionStatus.expired,
    "incomplete_expired": SubscriptionStatus.expired,
    "canceled": SubscriptionStatus.canceled,
    "cancelled": SubscriptionStatus.canceled,
}


def parse_status(value: str | SubscriptionStatus) -> SubscriptionStatus:
    """Resolves any known spelling to a SubscriptionStatus. Raises ValueError otherwise."""
    if isinstance(value, SubscriptionStatus):
        return value
    key = str(value).strip().lower()
    try:
        return STATUS_SYNONYMS[key]
    except KeyError:
        raise ValueError(f"Unknown subscription status: {value!r}") from None


# Statuses that still give the tenant full access. Grace keeps access on purpose.
ACCESS_STATUSES = frozenset({
    SubscriptionStatus.trialing,
    SubscriptionStatus.active,
    SubscriptionStatus.past_due,
    SubscriptionStatus.grace_period,
})


def grants_access(status: SubscriptionStatus) -> bool:
    return status in ACCESS_STATUSES
