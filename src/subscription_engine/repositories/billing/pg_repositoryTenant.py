# subscription_engine/repositories/billing/pg_repositoryTenant.py

import logging
from uuid import UUID
from typing import Optional
from sqlalchemy import select, update, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from subscription_engine.db import TenantORM
from subscription_engine.db.base import get_session
from subscription_engine.exceptions import DatabaseError

logger = logging.getLogger(__name__)


class TenantRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def check_connection(self) -> None:
        async for session in get_session(self._session_factory):
            try:
                await session.execute(text("SELECT 1"))
            except (SQLAlchemyError, OSError) as e:
                raise DatabaseError(f"PostgreSQL is unreachable: {e}")

    async def create_tenant(self, name: str, email: str | None = None, whatsapp_number: str | None = None,
                            external_customer_id: str | None = None) -> TenantORM:
        tenant = TenantORM(name=name, email=email, whatsapp_number=whatsapp_number,
                           external_customer_id=external_customer_id)
        async for session in get_session(self._session_factory):
            try:
                session.add(tenant)
                await session.commit()
                await session.refresh(tenant)
                logger.info(f"Created tenant '{name}' with id {tenant.id}")
                return tenant
            except IntegrityError:
                await session.rollback()
                raise DatabaseError(f"Customer reference '{external_customer_id}' is already linked to a tenant.")
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to create tenant: {e}")

    async def get_tenant(self, tenant_id: UUID) -> Optional[TenantORM]:
        async for session in get_session(self._session_factory):
            return await session.get(TenantORM, tenant_id)

    async def exists_in_session(self, session: AsyncSession, tenant_id: UUID) -> bool:
        return (await session.get(TenantORM, tenant_id)) is not None

    async def find_by_customer_ref_in_session(self, session: AsyncSession, customer_ref: str) -> Optional[UUID]:
        stmt = select(TenantORM.id).where(TenantORM.external_customer_id == customer_ref)
        return (await session.execute(stmt)).scalar_one_or_none()

    async def link_customer_in_session(self, session: AsyncSession, tenant_id: UUID, customer_ref: str) -> None:
        """Stores the provider customer id on the tenant if it has none yet."""
        stmt = (
            update(TenantORM)
            .where(TenantORM.id == tenant_id, TenantORM.external_customer_id.is_(None))
            .values(external_customer_id=customer_ref)
        )
        await session.execute(stmt)
