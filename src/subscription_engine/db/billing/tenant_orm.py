# subscription_engine/db/billing/tenant_orm.py
from __future__ import annotations
from uuid import UUID, uuid4
from typing import List, Optional
from sqlalchemy import String
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..base import Base, CreatedAt
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .subscription_orm import SubscriptionORM


class TenantORM(Base):
    """A restaurant account."""
    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    whatsapp_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Customer id at the payment provider; events arrive keyed by it.
    external_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True, index=True)

    created_at: Mapped[CreatedAt]

    subscriptions: Mapped[List["SubscriptionORM"]] = relationship(back_populates="tenant")
