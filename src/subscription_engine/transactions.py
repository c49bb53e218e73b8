# subscription_engine/transactions.py

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from subscription_engine.config import BillingConfig
from subscription_engine.db.uow import AsyncUnitOfWork
from subscription_engine.exceptions import BillingEngineError, ConcurrentModificationError, DatabaseError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TenantTransactor:
    """
    Runs a unit of work serialized per tenant.

    Within this process an asyncio.Lock per tenant orders the writers; across
    processes the transaction-scoped advisory lock does. A compare-and-swap
    miss on the subscription version rolls the transaction back and the whole
    unit of work is re-run from a fresh read.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], billing: BillingConfig):
        self._session_factory = session_factory
        self._billing = billing
        # Only tenants with a writer running or waiting keep an entry.
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._holders: Counter = Counter()

    @asynccontextmanager
    async def _tenant_lock(self, tenant_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        self._holders[tenant_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[tenant_id] -= 1
            if self._holders[tenant_id] == 0:
                del self._holders[tenant_id]
                del self._locks[tenant_id]

    def _log_retry(self, retry_state) -> None:
        logger.warning(
            f"Concurrent modification, retrying (attempt {retry_state.attempt_number}/"
            f"{self._billing.max_write_attempts})"
        )

    async def run(self, tenant_id: UUID, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._billing.max_write_attempts),
            wait=wait_exponential(
                multiplier=self._billing.retry_min_seconds,
                min=self._billing.retry_min_seconds,
                max=self._billing.retry_max_seconds,
            ),
            retry=retry_if_exception_type(ConcurrentModificationError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async with self._tenant_lock(tenant_id):
                        async with AsyncUnitOfWork(self._session_factory) as uow:
                            await uow.advisory_lock_tenant(tenant_id)
                            result = await work(uow.session)
        except BillingEngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Transaction for tenant {tenant_id} failed: {e}")
            raise DatabaseError(f"Transaction for tenant {tenant_id} failed: {e}")
        return result
