# subscription_engine/repositories/billing/pg_repositoryReminder.py

import logging
from datetime import date
from uuid import UUID
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from subscription_engine.db import ReminderLogORM
from subscription_engine.db.base import get_session
from subscription_engine.exceptions import DatabaseError
from subscription_engine.models.notification import ReminderIntent

logger = logging.getLogger(__name__)


class ReminderRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def was_notified(self, tenant_id: UUID, day: date) -> bool:
        async for session in get_session(self._session_factory):
            stmt = select(ReminderLogORM.id).where(ReminderLogORM.tenant_id == tenant_id, ReminderLogORM.day == day)
            try:
                return (await session.execute(stmt)).first() is not None
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to read reminder log for tenant {tenant_id}: {e}")

    async def record_once(self, intent: ReminderIntent, day: date) -> bool:
        """
        Logs the reminder for (tenant, day). Returns False when one was already
        logged that day, in which case nothing must be sent.
        """
        async for session in get_session(self._session_factory):
            try:
                stmt = (
                    pg_insert(ReminderLogORM)
                    .values(
                        tenant_id=intent.tenant_id,
                        subscription_id=intent.subscription_id,
                        day=day,
                        threshold_days=intent.threshold_days,
                        reason_code=intent.reason_code.value,
                    )
                    .on_conflict_do_nothing(index_elements=[ReminderLogORM.tenant_id, ReminderLogORM.day])
                    .returning(ReminderLogORM.id)
                )
                inserted = (await session.execute(stmt)).scalar_one_or_none()
                await session.commit()
                return inserted is not None
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to log reminder for tenant {intent.tenant_id}: {e}")

    async def forget(self, tenant_id: UUID, day: date) -> None:
        async for session in get_session(self._session_factory):
            try:
                await session.execute(
                    delete(ReminderLogORM).where(ReminderLogORM.tenant_id == tenant_id, ReminderLogORM.day == day)
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to clear reminder log for tenant {tenant_id}: {e}")
