# subscription_engine/models/payment.py

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .status import PaymentRequestStatus, SubscriptionStatus
from .subscription import Period, SubscriptionRecord, utcnow


class PaymentMethod(str, Enum):
    bank_transfer = "bank_transfer"
    mobile_money = "mobile_money"
    proration = "proration"


class PaymentRequestCreate(BaseModel):
    tenant_id: UUID
    subscription_id: UUID
    amount: Decimal = Field(..., gt=0)
    currency: str = Field("RWF", min_length=3, max_length=3)
    period: Period
    due_date: Optional[datetime] = None
    payment_method: PaymentMethod = PaymentMethod.bank_transfer
    description: Optional[str] = None


class PaymentRequestRecord(BaseModel):
    model_config = {"frozen": True, "from_attributes": True}

    id: UUID = Field(default_factory=uuid4)
    tenant_id: UUID
    subscription_id: UUID
    amount: Decimal
    currency: str
    period: Period
    due_date: datetime
    status: PaymentRequestStatus = PaymentRequestStatus.pending
    payment_method: PaymentMethod = PaymentMethod.bank_transfer
    description: Optional[str] = None
    proof_reference: Optional[str] = None

    verified_by: Optional[str] = None
    admin_notes: Optional[str] = None
    decided_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class DecisionResult(BaseModel):
    request: PaymentRequestRecord
    subscription_status: SubscriptionStatus


class PlanChangeResult(BaseModel):
    """Outcome of a plan change: the new record, the prorated charge and the draft to bill it."""
    record: SubscriptionRecord
    charge: Decimal
    payment_request: Optional[PaymentRequestCreate] = None

