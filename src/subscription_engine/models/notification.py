# subscription_engine/models/notification.py

from __future__ import annotations
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class ReminderReason(str, Enum):
    trial_expiring = "trial_expiring"
    subscription_expiring = "subscription_expiring"


class ReminderIntent(BaseModel):
    """What the delivery collaborator (email / WhatsApp) needs to build a message."""
    model_config = {"frozen": True}

    tenant_id: UUID
    threshold_days: int
    reason_code: ReminderReason
    subscription_id: Optional[UUID] = None
