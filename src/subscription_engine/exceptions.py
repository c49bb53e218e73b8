class BillingEngineError(Exception):
    """Base class."""


class DatabaseError(BillingEngineError):
    pass


class NotFoundError(BillingEngineError):
    pass


class InvalidTransitionError(BillingEngineError):
    """The requested transition is not legal from the current status."""


class OverlappingPeriodError(BillingEngineError):
    """An approved payment request already covers part of the period."""


class AlreadyFinalizedError(BillingEngineError):
    """The payment request is already approved or rejected."""


class UnresolvedTenantError(BillingEngineError):
    """A provider event does not map to any known tenant."""


class ConcurrentModificationError(BillingEngineError):
    """The subscription row changed between read and write."""
