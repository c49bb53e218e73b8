# subscription_engine/repositories/billing/pg_repositoryPlan.py

import logging
from uuid import UUID
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from subscription_engine.db import SubscriptionPlanORM
from subscription_engine.db.base import get_session
from subscription_engine.exceptions import DatabaseError, NotFoundError
from subscription_engine.models.plan import BillingInterval, PlanCreate, PlanSnapshot, FEATURE_SET_VERSION

logger = logging.getLogger(__name__)


class PlanRepository:
    """Plan catalog. Hands out snapshots; subscriptions never point back at live rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def to_snapshot(plan: SubscriptionPlanORM) -> PlanSnapshot:
        return PlanSnapshot(
            plan_id=plan.id,
            name=plan.name,
            price=plan.price,
            currency=plan.currency,
            interval=BillingInterval(plan.billing_interval),
            trial_days=plan.trial_days,
            features=plan.features,
            features_version=FEATURE_SET_VERSION,
        )

    async def create_plan(self, data: PlanCreate) -> SubscriptionPlanORM:
        plan = SubscriptionPlanORM(
            name=data.name,
            description=data.description,
            price=data.price,
            currency=data.currency.upper(),
            billing_interval=data.interval.value,
            trial_days=data.trial_days,
            features=[f.value for f in data.features],
            external_price_id=data.external_price_id,
        )
        async for session in get_session(self._session_factory):
            try:
                session.add(plan)
                await session.commit()
                await session.refresh(plan)
                logger.info(f"Created plan '{plan.name}' with id {plan.id}")
                return plan
            except IntegrityError:
                await session.rollback()
                raise DatabaseError(f"Plan with name '{data.name}' already exists.")
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to create plan: {e}")

    async def get_plan_by_name(self, name: str) -> Optional[SubscriptionPlanORM]:
        async for session in get_session(self._session_factory):
            stmt = select(SubscriptionPlanORM).where(SubscriptionPlanORM.name == name)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def list_active_plans(self) -> List[SubscriptionPlanORM]:
        async for session in get_session(self._session_factory):
            stmt = (
                select(SubscriptionPlanORM)
                .where(SubscriptionPlanORM.is_active.is_(True))
                .order_by(SubscriptionPlanORM.price)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_snapshot(self, plan_id: UUID) -> PlanSnapshot:
        async for session in get_session(self._session_factory):
            return await self.get_snapshot_in_session(session, plan_id)

    async def get_snapshot_in_session(self, session: AsyncSession, plan_id: UUID) -> PlanSnapshot:
        plan = await session.get(SubscriptionPlanORM, plan_id)
        if plan is None:
            raise NotFoundError(f"Plan with id {plan_id} not found.")
        return self.to_snapshot(plan)
