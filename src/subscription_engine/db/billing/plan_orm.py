# subscription_engine/db/billing/plan_orm.py
from __future__ import annotations
from uuid import UUID, uuid4
from sqlalchemy import String, Boolean, Numeric, Text, Integer
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from ..base import Base, CreatedAt, UpdatedAt


class SubscriptionPlanORM(Base):
    """Mutable plan catalog. Subscriptions copy what they need at creation time."""
    __tablename__ = "subscription_plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)

    price: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="RWF")
    # 'monthly' | 'yearly'
    billing_interval: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=14)

    # Archived plans stay for history.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # List of Feature values, e.g. ["qr_code_generation", "menu_images"]
    features: Mapped[list] = mapped_column(JSONB, nullable=False, server_default='[]')
    external_price_id: Mapped[str] = mapped_column(String(255), nullable=True, unique=True)

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]
