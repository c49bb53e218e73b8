# subscription_engine/repositories/billing/pg_repositoryPaymentRequest.py

import logging
from uuid import UUID
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from subscription_engine.db import PaymentRequestORM
from subscription_engine.db.base import get_session
from subscription_engine.exceptions import DatabaseError
from subscription_engine.models.payment import PaymentMethod, PaymentRequestCreate, PaymentRequestRecord
from subscription_engine.models.status import PaymentRequestStatus
from subscription_engine.models.subscription import Period

logger = logging.getLogger(__name__)

_OPEN = [PaymentRequestStatus.pending.value, PaymentRequestStatus.pending_approval.value]


class PaymentRequestRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def to_record(row: PaymentRequestORM) -> PaymentRequestRecord:
        return PaymentRequestRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            subscription_id=row.subscription_id,
            amount=row.amount,
            currency=row.currency,
            period=Period(start=row.period_start, end=row.period_end),
            due_date=row.due_date,
            status=PaymentRequestStatus(row.status),
            payment_method=PaymentMethod(row.payment_method),
            description=row.description,
            proof_reference=row.proof_reference,
            verified_by=row.verified_by,
            admin_notes=row.admin_notes,
            decided_at=row.decided_at,
            created_at=row.created_at,
        )

    async def add_in_session(self, session: AsyncSession, data: PaymentRequestCreate) -> PaymentRequestRecord:
        row = PaymentRequestORM(
            tenant_id=data.tenant_id,
            subscription_id=data.subscription_id,
            amount=data.amount,
            currency=data.currency.upper(),
            period_start=data.period.start,
            period_end=data.period.end,
            due_date=data.due_date or data.period.start,
            status=PaymentRequestStatus.pending.value,
            payment_method=data.payment_method.value,
            description=data.description,
        )
        session.add(row)
        await session.flush()
        await session.refresh(row)
        logger.info(f"Payment request {row.id} submitted for subscription {data.subscription_id} "
                    f"({data.amount} {row.currency}, {data.period.start:%Y-%m-%d}..{data.period.end:%Y-%m-%d})")
        return self.to_record(row)

    async def get(self, request_id: UUID) -> Optional[PaymentRequestRecord]:
        async for session in get_session(self._session_factory):
            row = await session.get(PaymentRequestORM, request_id)
            return self.to_record(row) if row else None

    async def get_for_update_in_session(self, session: AsyncSession,
                                        request_id: UUID) -> Optional[PaymentRequestRecord]:
        """Row-locks the request until the surrounding transaction ends."""
        stmt = (
            select(PaymentRequestORM)
            .where(PaymentRequestORM.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        return self.to_record(row) if row else None

    async def find_overlapping_approved_in_session(self, session: AsyncSession, subscription_id: UUID,
                                                   period: Period,
                                                   exclude_id: UUID | None = None) -> List[PaymentRequestRecord]:
        # Half-open intervals: [a, b) and [c, d) overlap iff a < d and c < b.
        stmt = select(PaymentRequestORM).where(
            PaymentRequestORM.subscription_id == subscription_id,
            PaymentRequestORM.status == PaymentRequestStatus.approved.value,
            PaymentRequestORM.period_start < period.end,
            PaymentRequestORM.period_end > period.start,
        )
        if exclude_id is not None:
            stmt = stmt.where(PaymentRequestORM.id != exclude_id)
        result = await session.execute(stmt)
        return [self.to_record(row) for row in result.scalars().all()]

    async def update_in_session(self, session: AsyncSession, record: PaymentRequestRecord) -> PaymentRequestRecord:
        stmt = (
            update(PaymentRequestORM)
            .where(PaymentRequestORM.id == record.id)
            .values(
                status=record.status.value,
                proof_reference=record.proof_reference,
                verified_by=record.verified_by,
                admin_notes=record.admin_notes,
                decided_at=record.decided_at,
            )
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)
        # Flush now so an exclusion-constraint violation surfaces here.
        await session.flush()
        return record

    async def list_pending(self) -> List[PaymentRequestRecord]:
        async for session in get_session(self._session_factory):
            try:
                stmt = (
                    select(PaymentRequestORM)
                    .where(PaymentRequestORM.status.in_(_OPEN))
                    .order_by(PaymentRequestORM.created_at)
                )
                result = await session.execute(stmt)
                return [self.to_record(row) for row in result.scalars().all()]
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to list pending payment requests: {e}")

    async def list_for_tenant(self, tenant_id: UUID) -> List[PaymentRequestRecord]:
        async for session in get_session(self._session_factory):
            stmt = (
                select(PaymentRequestORM)
                .where(PaymentRequestORM.tenant_id == tenant_id)
                .order_by(PaymentRequestORM.created_at.desc())
            )
            result = await session.execute(stmt)
            return [self.to_record(row) for row in result.scalars().all()]
