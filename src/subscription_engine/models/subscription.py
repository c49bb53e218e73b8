# subscription_engine/models/subscription.py

from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from .plan import PlanSnapshot
from .status import SubscriptionStatus


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Period(BaseModel):
    """Half-open billing period [start, end)."""
    model_config = {"frozen": True}

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def normalize_bounds(cls, value):
        return ensure_utc(value)

    @model_validator(mode="after")
    def check_order(self):
        if self.end <= self.start:
            raise ValueError("period end must be after period start")
        return self

    def overlaps(self, other: "Period") -> bool:
        return self.start < other.end and other.start < self.end


class SubscriptionRecord(BaseModel):
    """
    One tenant subscription as the state machine sees it.
    Immutable: every transition returns a copy.
    """
    model_config = {"frozen": True, "from_attributes": True}

    id: UUID = Field(default_factory=uuid4)
    tenant_id: UUID
    plan: PlanSnapshot
    status: SubscriptionStatus

    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None

    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    external_subscription_id: Optional[str] = None
    payment_on_file: bool = False
    manual_paid_through: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @field_validator(
        "trial_start", "trial_end", "current_period_start", "current_period_end",
        "next_billing_date", "grace_period_end", "canceled_at", "manual_paid_through",
        "last_payment_at", "created_at",
    )
    @classmethod
    def normalize_datetimes(cls, value):
        return ensure_utc(value)

    @property
    def reference_expiry(self) -> datetime:
        """trial_end for trials, current_period_end for everything else."""
        if self.status.is_trial and self.trial_end is not None:
            return self.trial_end
        return self.current_period_end

    def evolve(self, **changes) -> "SubscriptionRecord":
        return self.model_copy(update=changes)


class IntentKind(str, Enum):
    trial_converted = "trial_converted"
    trial_expired = "trial_expired"
    period_lapsed = "period_lapsed"
    grace_started = "grace_started"
    grace_expired = "grace_expired"
    payment_window_closed = "payment_window_closed"
    payment_applied = "payment_applied"
    payment_failed = "payment_failed"
    plan_changed = "plan_changed"
    canceled = "canceled"
    state_repaired = "state_repaired"


class TransitionIntent(BaseModel):
    model_config = {"frozen": True}

    kind: IntentKind
    subscription_id: UUID
    tenant_id: UUID
    from_status: SubscriptionStatus
    to_status: SubscriptionStatus
    detail: Optional[str] = None


class TransitionResult(BaseModel):
    model_config = {"frozen": True}

    record: SubscriptionRecord
    intents: List[TransitionIntent] = []

    @property
    def changed(self) -> bool:
        return bool(self.intents)


class GraceCountdown(BaseModel):
    in_grace: bool
    grace_period_end: Optional[datetime] = None
    days_remaining: int = 0
    hours_remaining: int = 0
    reason: Optional[str] = None


class SubscriptionView(BaseModel):
    """Read-side projection returned to dashboards."""
    subscription: SubscriptionRecord
    has_access: bool
    days_until_expiry: int
    grace: GraceCountdown
