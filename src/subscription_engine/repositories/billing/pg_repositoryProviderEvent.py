# subscription_engine/repositories/billing/pg_repositoryProviderEvent.py

from uuid import UUID
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from subscription_engine.db import ProviderEventORM
from subscription_engine.db.base import get_session
from subscription_engine.models.events import ProviderEvent, ReconcileOutcome


class ProviderEventRepository:
    """Idempotency markers for provider events."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def claim_in_session(self, session: AsyncSession, event: ProviderEvent,
                               tenant_id: UUID | None) -> bool:
        """
        Inserts the marker for `event`. False means another transaction already
        processed (or is processing) the same event id.
        """
        stmt = (
            pg_insert(ProviderEventORM)
            .values(
                event_id=event.id,
                kind=event.kind.value,
                tenant_id=tenant_id,
                outcome=ReconcileOutcome.applied.value,
            )
            .on_conflict_do_nothing(index_elements=[ProviderEventORM.event_id])
            .returning(ProviderEventORM.event_id)
        )
        return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def set_outcome_in_session(self, session: AsyncSession, event_id: str,
                                     outcome: ReconcileOutcome) -> None:
        await session.execute(
            update(ProviderEventORM).where(ProviderEventORM.event_id == event_id).values(outcome=outcome.value)
        )

    async def get_outcome(self, event_id: str) -> ReconcileOutcome | None:
        async for session in get_session(self._session_factory):
            stmt = select(ProviderEventORM.outcome).where(ProviderEventORM.event_id == event_id)
            value = (await session.execute(stmt)).scalar_one_or_none()
            return ReconcileOutcome(value) if value else None
