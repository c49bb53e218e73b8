# subscription_engine/db/billing/reminder_log_orm.py
from __future__ import annotations
from uuid import UUID, uuid4
from datetime import date
from typing import Optional
from sqlalchemy import String, Integer, Date, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column
from ..base import Base, CreatedAt


class ReminderLogORM(Base):
    """Reminders already emitted. At most one row per tenant per calendar day."""
    __tablename__ = "reminder_log"
    __table_args__ = (
        UniqueConstraint("tenant_id", "day", name="uq_reminder_log_tenant_day"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id"), nullable=False)
    subscription_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("subscriptions.id"), nullable=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    threshold_days: Mapped[int] = mapped_column(Integer, nullable=False)
    reason_code: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[CreatedAt]
