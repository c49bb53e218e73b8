# subscription_engine/__init__.py

from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from .client import BillingClient
from .config import get_settings, EngineConfig, PostgresConfig, BillingConfig, SchedulerConfig, NotificationConfig
from .notifications import NotificationDispatcher, Notifier
from .scheduler import Scheduler

from .exceptions import *


def create_billing_client(config: Optional[EngineConfig] = None,
                          notifier: Optional[Notifier] = None) -> BillingClient:
    """
    Builds a configured BillingClient.

    :param config: Explicit configuration. Environment settings are used when omitted.
    :param notifier: Delivery collaborator for reminders and transitions; logs by default.
    """
    if config is None:
        config = get_settings().to_engine_config()

    engine = create_async_engine(
        config.postgres.get_pg_dsn(),
        pool_size=config.postgres.pool_size,
        max_overflow=config.postgres.max_overflow,
        pool_timeout=config.postgres.pool_timeout,
        pool_recycle=config.postgres.pool_recycle,
        pool_pre_ping=config.postgres.pool_pre_ping,
        connect_args={
            "server_settings": {
                "application_name": config.postgres.application_name
            }
        }
    )
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    dispatcher = NotificationDispatcher(notifier, queue_size=config.notifications.queue_size)

    return BillingClient(
        session_factory=session_factory,
        billing=config.billing,
        dispatcher=dispatcher,
        engine=engine,
    )


__all__ = [
    "BillingClient", "create_billing_client", "Scheduler",
    "NotificationDispatcher", "Notifier",
    "EngineConfig", "PostgresConfig", "BillingConfig", "SchedulerConfig", "NotificationConfig",
    "BillingEngineError", "DatabaseError", "NotFoundError", "InvalidTransitionError",
    "OverlappingPeriodError", "AlreadyFinalizedError", "UnresolvedTenantError",
    "ConcurrentModificationError",
]
