# subscription_engine/models/events.py

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .subscription import Period, utcnow


class ProviderEventKind(str, Enum):
    checkout_completed = "checkout_completed"
    subscription_created = "subscription_created"
    subscription_updated = "subscription_updated"
    subscription_canceled = "subscription_canceled"
    invoice_paid = "invoice_paid"
    invoice_payment_failed = "invoice_payment_failed"


class ProviderEvent(BaseModel):
    """
    An already-authenticated payment-provider event.
    Signature verification and SDK parsing happen before this object exists.
    """
    model_config = {"frozen": True}

    id: str = Field(..., min_length=1)
    kind: ProviderEventKind
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    # Tenant id placed on the checkout session by our own checkout flow.
    client_reference: Optional[UUID] = None
    # Provider-side subscription status ('active', 'trialing', 'past_due', 'canceled', ...).
    provider_status: Optional[str] = None
    plan_id: Optional[UUID] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    payment_method_attached: Optional[bool] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def period(self) -> Optional[Period]:
        if self.period_start is None or self.period_end is None or self.period_end <= self.period_start:
            return None
        return Period(start=self.period_start, end=self.period_end)


class ReconcileOutcome(str, Enum):
    applied = "applied"
    duplicate = "duplicate"
    unresolved = "unresolved"
    ignored = "ignored"


class ReconcileResult(BaseModel):
    event_id: str
    outcome: ReconcileOutcome
    tenant_id: Optional[UUID] = None
    subscription_id: Optional[UUID] = None
    detail: Optional[str] = None
