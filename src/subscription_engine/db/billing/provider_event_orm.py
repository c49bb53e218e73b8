# subscription_engine/db/billing/provider_event_orm.py
from __future__ import annotations
from uuid import UUID
from typing import Optional
from sqlalchemy import String
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column
from ..base import Base, CreatedAt


class ProviderEventORM(Base):
    """Idempotency marker: one row per provider event id that has been processed."""
    __tablename__ = "provider_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    tenant_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID(as_uuid=True), nullable=True, index=True)
    # applied | ignored
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)
    received_at: Mapped[CreatedAt]
