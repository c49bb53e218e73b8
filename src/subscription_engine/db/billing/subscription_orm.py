# subscription_engine/db/billing/subscription_orm.py
from __future__ import annotations
from uuid import UUID, uuid4
from datetime import datetime
from typing import List, Optional
from sqlalchemy import String, ForeignKey, DateTime, Numeric, Integer, Boolean, Index, Text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..base import Base, CreatedAt, UpdatedAt
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .tenant_orm import TenantORM
    from .payment_request_orm import PaymentRequestORM


class SubscriptionORM(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # "current" = most recently created per tenant
        Index("ix_subscriptions_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)

    # Plan snapshot. Copied at creation; never re-read from subscription_plans.
    plan_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("subscription_plans.id"), nullable=True)
    plan_name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_interval: Mapped[str] = mapped_column(String(20), nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    features: Mapped[list] = mapped_column(JSONB, nullable=False, server_default='[]')
    features_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # trialing | active | pending_payment | past_due | grace_period | expired | canceled
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)

    trial_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True, index=True)
    payment_on_file: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manual_paid_through: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic-lock row version; every write is a compare-and-swap on it.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    tenant: Mapped["TenantORM"] = relationship(back_populates="subscriptions")
    payment_requests: Mapped[List["PaymentRequestORM"]] = relationship(back_populates="subscription")
