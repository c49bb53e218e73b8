# subscription_engine/repositories/billing/pg_repositorySubscription.py

import logging
from uuid import UUID
from typing import List, Optional
from sqlalchemy import select, update, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from subscription_engine.db import SubscriptionORM
from subscription_engine.db.base import get_session
from subscription_engine.exceptions import ConcurrentModificationError, DatabaseError
from subscription_engine.models.plan import BillingInterval, PlanSnapshot
from subscription_engine.models.status import SubscriptionStatus
from subscription_engine.models.subscription import SubscriptionRecord

logger = logging.getLogger(__name__)

# Statuses the scheduler still has work for.
_TICKABLE = [
    SubscriptionStatus.trialing.value,
    SubscriptionStatus.active.value,
    SubscriptionStatus.pending_payment.value,
    SubscriptionStatus.past_due.value,
    SubscriptionStatus.grace_period.value,
]


class SubscriptionRepository:
    """
    Subscription Record Store.

    Rows are never deleted. Every update is a compare-and-swap on `version`:
    a writer that read a stale row gets ConcurrentModificationError and must
    re-read before trying again.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # --- mapping ---

    @staticmethod
    def to_record(row: SubscriptionORM) -> SubscriptionRecord:
        plan = PlanSnapshot(
            plan_id=row.plan_id,
            name=row.plan_name,
            price=row.price,
            currency=row.currency,
            interval=BillingInterval(row.billing_interval),
            trial_days=row.trial_days,
            features=row.features,
            features_version=row.features_version,
        )
        return SubscriptionRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            plan=plan,
            status=SubscriptionStatus(row.status),
            trial_start=row.trial_start,
            trial_end=row.trial_end,
            current_period_start=row.current_period_start,
            current_period_end=row.current_period_end,
            next_billing_date=row.next_billing_date,
            grace_period_end=row.grace_period_end,
            canceled_at=row.canceled_at,
            cancellation_reason=row.cancellation_reason,
            external_subscription_id=row.external_subscription_id,
            payment_on_file=row.payment_on_file,
            manual_paid_through=row.manual_paid_through,
            last_payment_at=row.last_payment_at,
            created_at=row.created_at,
            version=row.version,
        )

    @staticmethod
    def _values(record: SubscriptionRecord) -> dict:
        plan = record.plan
        return {
            "tenant_id": record.tenant_id,
            "plan_id": plan.plan_id,
            "plan_name": plan.name,
            "price": plan.price,
            "currency": plan.currency,
            "billing_interval": plan.interval.value,
            "trial_days": plan.trial_days,
            "features": sorted(f.value for f in plan.features),
            "features_version": plan.features_version,
            "status": record.status.value,
            "trial_start": record.trial_start,
            "trial_end": record.trial_end,
            "current_period_start": record.current_period_start,
            "current_period_end": record.current_period_end,
            "next_billing_date": record.next_billing_date,
            "grace_period_end": record.grace_period_end,
            "canceled_at": record.canceled_at,
            "cancellation_reason": record.cancellation_reason,
            "external_subscription_id": record.external_subscription_id,
            "payment_on_file": record.payment_on_file,
            "manual_paid_through": record.manual_paid_through,
            "last_payment_at": record.last_payment_at,
        }

    # --- reads ---

    async def check_connection(self) -> None:
        async for session in get_session(self._session_factory):
            try:
                await session.execute(text("SELECT 1"))
            except (SQLAlchemyError, OSError) as e:
                raise DatabaseError(f"PostgreSQL is unreachable: {e}")

    async def get(self, subscription_id: UUID) -> Optional[SubscriptionRecord]:
        async for session in get_session(self._session_factory):
            try:
                return await self.get_in_session(session, subscription_id)
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to load subscription {subscription_id}: {e}")

    async def get_in_session(self, session: AsyncSession, subscription_id: UUID) -> Optional[SubscriptionRecord]:
        row = await session.get(SubscriptionORM, subscription_id, populate_existing=True)
        return self.to_record(row) if row else None

    async def get_current_for_tenant(self, tenant_id: UUID) -> Optional[SubscriptionRecord]:
        async for session in get_session(self._session_factory):
            try:
                return await self.get_current_for_tenant_in_session(session, tenant_id)
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to load subscription of tenant {tenant_id}: {e}")

    async def get_current_for_tenant_in_session(self, session: AsyncSession,
                                                tenant_id: UUID) -> Optional[SubscriptionRecord]:
        """The most recently created record; ties go to the larger id."""
        stmt = (
            select(SubscriptionORM)
            .where(SubscriptionORM.tenant_id == tenant_id)
            .order_by(SubscriptionORM.created_at.desc(), SubscriptionORM.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        return self.to_record(row) if row else None

    async def find_by_external_ref_in_session(self, session: AsyncSession,
                                              subscription_ref: str) -> Optional[SubscriptionRecord]:
        stmt = (
            select(SubscriptionORM)
            .where(SubscriptionORM.external_subscription_id == subscription_ref)
            .execution_options(populate_existing=True)
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        return self.to_record(row) if row else None

    async def list_history(self, tenant_id: UUID) -> List[SubscriptionRecord]:
        async for session in get_session(self._session_factory):
            stmt = (
                select(SubscriptionORM)
                .where(SubscriptionORM.tenant_id == tenant_id)
                .order_by(SubscriptionORM.created_at.desc(), SubscriptionORM.id.desc())
            )
            try:
                result = await session.execute(stmt)
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to load subscription history of tenant {tenant_id}: {e}")
            return [self.to_record(row) for row in result.scalars().all()]

    async def list_tenants_to_tick(self) -> List[UUID]:
        """Tenants owning at least one record that time can still move."""
        async for session in get_session(self._session_factory):
            try:
                stmt = (
                    select(SubscriptionORM.tenant_id)
                    .where(SubscriptionORM.status.in_(_TICKABLE))
                    .distinct()
                )
                result = await session.execute(stmt)
                return list(result.scalars().all())
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to list tenants for tick: {e}")

    # --- writes (caller owns the transaction) ---

    async def add_in_session(self, session: AsyncSession, record: SubscriptionRecord) -> SubscriptionRecord:
        row = SubscriptionORM(id=record.id, created_at=record.created_at, version=0, **self._values(record))
        session.add(row)
        await session.flush()
        logger.info(f"Created subscription {record.id} for tenant {record.tenant_id} in status '{record.status.value}'")
        return record.evolve(version=0)

    async def save_in_session(self, session: AsyncSession, record: SubscriptionRecord) -> SubscriptionRecord:
        """
        Writes `record` if the stored row still has `record.version`.
        Returns the record with its new version.
        """
        stmt = (
            update(SubscriptionORM)
            .where(SubscriptionORM.id == record.id, SubscriptionORM.version == record.version)
            .values(version=SubscriptionORM.version + 1, **self._values(record))
            .returning(SubscriptionORM.version)
            .execution_options(synchronize_session=False)
        )
        new_version = (await session.execute(stmt)).scalar_one_or_none()
        if new_version is None:
            raise ConcurrentModificationError(
                f"Subscription {record.id} changed since version {record.version} was read"
            )
        return record.evolve(version=new_version)
