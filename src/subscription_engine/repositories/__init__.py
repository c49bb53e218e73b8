from .billing.pg_repositoryTenant import TenantRepository
from .billing.pg_repositoryPlan import PlanRepository
from .billing.pg_repositorySubscription import SubscriptionRepository
from .billing.pg_repositoryPaymentRequest import PaymentRequestRepository
from .billing.pg_repositoryProviderEvent import ProviderEventRepository
from .billing.pg_repositoryReminder import ReminderRepository

__all__ = [
    "TenantRepository",
    "PlanRepository",
    "SubscriptionRepository",
    "PaymentRequestRepository",
    "ProviderEventRepository",
    "ReminderRepository",
]
