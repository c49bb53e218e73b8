# subscription_engine/db/__init__.py

from .base import Base

from .billing.tenant_orm import TenantORM
from .billing.plan_orm import SubscriptionPlanORM
from .billing.subscription_orm import SubscriptionORM
from .billing.payment_request_orm import PaymentRequestORM
from .billing.provider_event_orm import ProviderEventORM
from .billing.reminder_log_orm import ReminderLogORM

from . import triggers


__all__ = [
    "Base",
    "TenantORM",
    "SubscriptionPlanORM",
    "SubscriptionORM",
    "PaymentRequestORM",
    "ProviderEventORM",
    "ReminderLogORM",
    "triggers",
]
