# subscription_engine/catalog.py
"""Default plan catalog written by `subscription-engine seed-plans`."""

from decimal import Decimal
from typing import List

from subscription_engine.models.plan import BillingInterval, Feature, PlanCreate

F = Feature

_STARTER = [
    F.menu_categories, F.menu_images, F.qr_code_generation, F.table_management,
    F.order_notifications, F.email_notifications, F.basic_analytics, F.email_support,
]
_PROFESSIONAL = _STARTER + [
    F.unlimited_menu_items, F.unlimited_tables, F.menu_variations, F.menu_accompaniments,
    F.custom_branding, F.custom_colors, F.custom_logo, F.whatsapp_integration,
    F.advanced_analytics, F.sales_reports, F.priority_support, F.online_payments,
]
_ENTERPRISE = _PROFESSIONAL + [
    F.remove_watermark, F.sms_notifications, F.export_reports, F.phone_support,
    F.dedicated_account_manager, F.api_access, F.webhook_integration, F.multiple_locations,
    F.staff_management, F.multi_language, F.custom_domain, F.invoice_generation, F.split_bills,
]

# (name, monthly RWF, yearly RWF, trial days, features). Yearly is priced as ten months.
_TIERS = [
    ("Starter", 15000, 150000, 14, _STARTER),
    ("Professional", 25000, 250000, 14, _PROFESSIONAL),
    ("Enterprise", 40000, 400000, 30, _ENTERPRISE),
]


def default_plans() -> List[PlanCreate]:
    plans = []
    for name, monthly, yearly, trial_days, features in _TIERS:
        plans.append(PlanCreate(name=name, price=Decimal(monthly), currency="RWF",
                                interval=BillingInterval.monthly, trial_days=trial_days, features=features))
        plans.append(PlanCreate(name=f"{name} (yearly)", price=Decimal(yearly), currency="RWF",
                                interval=BillingInterval.yearly, trial_days=trial_days, features=features))
    return plans
