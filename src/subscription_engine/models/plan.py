# subscription_engine/models/plan.py

from __future__ import annotations
import logging
from decimal import Decimal
from enum import Enum
from typing import Any, FrozenSet, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# Bump when Feature gains or loses members; snapshots keep the version they were taken with.
FEATURE_SET_VERSION = 1


class BillingInterval(str, Enum):
    monthly = "monthly"
    yearly = "yearly"

    @property
    def nominal_days(self) -> int:
        # Fixed nominal lengths, not calendar-exact.
        return 30 if self is BillingInterval.monthly else 365


class Feature(str, Enum):
    # menu
    unlimited_menu_items = "unlimited_menu_items"
    menu_categories = "menu_categories"
    menu_variations = "menu_variations"
    menu_accompaniments = "menu_accompaniments"
    menu_images = "menu_images"
    # tables & QR
    unlimited_tables = "unlimited_tables"
    qr_code_generation = "qr_code_generation"
    table_management = "table_management"
    # branding
    custom_branding = "custom_branding"
    custom_colors = "custom_colors"
    custom_logo = "custom_logo"
    remove_watermark = "remove_watermark"
    # notifications
    order_notifications = "order_notifications"
    email_notifications = "email_notifications"
    sms_notifications = "sms_notifications"
    whatsapp_integration = "whatsapp_integration"
    # analytics
    basic_analytics = "basic_analytics"
    advanced_analytics = "advanced_analytics"
    export_reports = "export_reports"
    sales_reports = "sales_reports"
    # support
    email_support = "email_support"
    priority_support = "priority_support"
    phone_support = "phone_support"
    dedicated_account_manager = "dedicated_account_manager"
    # integrations
    api_access = "api_access"
    webhook_integration = "webhook_integration"
    multiple_locations = "multiple_locations"
    staff_management = "staff_management"
    multi_language = "multi_language"
    custom_domain = "custom_domain"
    # payments
    online_payments = "online_payments"
    invoice_generation = "invoice_generation"
    split_bills = "split_bills"


def parse_features(raw: Any) -> FrozenSet[Feature]:
    """
    Turns a legacy feature blob (list of strings, one string, or None) into a closed set.
    Unknown keys are dropped and logged.
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, (str, Feature)):
        raw = [raw]
    result = set()
    for item in raw:
        try:
            result.add(Feature(item))
        except ValueError:
            logger.warning(f"Dropping unknown plan feature {item!r}")
    return frozenset(result)


class PlanSnapshot(BaseModel):
    """Plan terms frozen into a subscription at creation time."""
    model_config = {"frozen": True, "from_attributes": True}

    plan_id: Optional[UUID] = None
    name: str
    price: Decimal = Field(..., ge=0)
    currency: str = Field("RWF", min_length=3, max_length=3)
    interval: BillingInterval = BillingInterval.monthly
    trial_days: int = Field(14, ge=0)
    features: FrozenSet[Feature] = frozenset()
    features_version: int = FEATURE_SET_VERSION

    @field_validator("features", mode="before")
    @classmethod
    def coerce_features(cls, value):
        return parse_features(value)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()

    def has_feature(self, feature: Feature) -> bool:
        return feature in self.features


class PlanCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(..., ge=0)
    currency: str = "RWF"
    interval: BillingInterval = BillingInterval.monthly
    # None takes the engine's billing.default_trial_days.
    trial_days: int | None = Field(None, ge=0)
    features: list[Feature] = []
    external_price_id: str | None = None
