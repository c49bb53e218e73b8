from .status import (SubscriptionStatus, PaymentRequestStatus, STATUS_SYNONYMS,
                     parse_status, grants_access)
from .plan import BillingInterval, Feature, FEATURE_SET_VERSION, PlanSnapshot, PlanCreate, parse_features
from .subscription import (Period, SubscriptionRecord, IntentKind, TransitionIntent,
                           TransitionResult, GraceCountdown, SubscriptionView, utcnow)
from .payment import (PaymentMethod, PaymentRequestCreate, PaymentRequestRecord,
                      DecisionResult, PlanChangeResult)
from .events import ProviderEventKind, ProviderEvent, ReconcileOutcome, ReconcileResult
from .notification import ReminderReason, ReminderIntent

__all__ = [
    "SubscriptionStatus", "PaymentRequestStatus", "STATUS_SYNONYMS", "parse_status", "grants_access",
    "BillingInterval", "Feature", "FEATURE_SET_VERSION", "PlanSnapshot", "PlanCreate", "parse_features",
    "Period", "SubscriptionRecord", "IntentKind", "TransitionIntent", "TransitionResult",
    "GraceCountdown", "SubscriptionView", "utcnow",
    "PaymentMethod", "PaymentRequestCreate", "PaymentRequestRecord", "DecisionResult", "PlanChangeResult",
    "ProviderEventKind", "ProviderEvent", "ReconcileOutcome", "ReconcileResult",
    "ReminderReason", "ReminderIntent",
]
