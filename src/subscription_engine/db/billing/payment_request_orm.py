# subscription_engine/db/billing/payment_request_orm.py
from __future__ import annotations
from uuid import UUID, uuid4
from datetime import datetime
from typing import Optional
from sqlalchemy import String, ForeignKey, Numeric, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..base import Base, CreatedAt, UpdatedAt
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .subscription_orm import SubscriptionORM


class PaymentRequestORM(Base):
    """Manual (bank / mobile money) payment submissions and their admin disposition."""
    __tablename__ = "payment_requests"
    __table_args__ = (
        Index("ix_payment_requests_subscription_period", "subscription_id", "period_start", "period_end"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    subscription_id: Mapped[UUID] = mapped_column(ForeignKey("subscriptions.id"), nullable=False)

    amount: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="RWF")
    # Half-open [period_start, period_end)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # pending | pending_approval | approved | rejected
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True, default="pending")
    # bank_transfer | mobile_money | proration
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False, default="bank_transfer")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    proof_reference: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    verified_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    subscription: Mapped["SubscriptionORM"] = relationship(back_populates="payment_requests")
