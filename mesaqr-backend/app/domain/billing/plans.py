"""Static plan catalogue: prices per currency and billing period, tier order and limits."""
from __future__ import annotations

from dataclasses import dataclass

from app.db import Settings
from app.domain.billing.enums import BillingPeriod, PlanType

PLAN_RANK = {
    PlanType.free: 0,
    PlanType.pro: 1,
    PlanType.premium: 2,
}

PAID_PLANS = (PlanType.pro, PlanType.premium)

# Major currency units.
PLAN_PRICES = {
    "USD": {
        (PlanType.pro, BillingPeriod.monthly): 9,
        (PlanType.pro, BillingPeriod.annual): 90,
        (PlanType.premium, BillingPeriod.monthly): 14,
        (PlanType.premium, BillingPeriod.annual): 140,
    },
    "COP": {
        (PlanType.pro, BillingPeriod.monthly): 36000,
        (PlanType.pro, BillingPeriod.annual): 360000,
        (PlanType.premium, BillingPeriod.monthly): 56000,
        (PlanType.premium, BillingPeriod.annual): 560000,
    },
}

FREE_PLAN_YEARS = 100


@dataclass(frozen=True, slots=True)
class PlanLimits:
    max_items: int
    max_tables: int
    max_users: int
    max_categories: int
    realtime: bool
    reservations: bool
    analytics: bool


UNLIMITED = -1

PLAN_LIMITS = {
    PlanType.free: PlanLimits(
        max_items=15,
        max_tables=5,
        max_users=1,
        max_categories=3,
        realtime=False,
        reservations=False,
        analytics=False,
    ),
    PlanType.pro: PlanLimits(
        max_items=UNLIMITED,
        max_tables=UNLIMITED,
        max_users=UNLIMITED,
        max_categories=UNLIMITED,
        realtime=True,
        reservations=False,
        analytics=False,
    ),
    PlanType.premium: PlanLimits(
        max_items=UNLIMITED,
        max_tables=UNLIMITED,
        max_users=UNLIMITED,
        max_categories=UNLIMITED,
        realtime=True,
        reservations=True,
        analytics=True,
    ),
}


def plan_price(plan: PlanType, period: BillingPeriod, currency: str = "COP") -> int:
    if plan == PlanType.free:
        return 0
    return PLAN_PRICES[currency.upper()][(plan, period)]


def plan_price_minor_units(plan: PlanType, period: BillingPeriod, currency: str = "COP") -> int:
    return plan_price(plan, period, currency) * 100


def is_downgrade(current: PlanType, requested: PlanType) -> bool:
    return PLAN_RANK[requested] < PLAN_RANK[current]


def plan_limits(plan: PlanType) -> PlanLimits:
    return PLAN_LIMITS[plan]


def stripe_price_id(settings: Settings, plan: PlanType, period: BillingPeriod) -> str | None:
    if plan == PlanType.free:
        return None
    annual = period == BillingPeriod.annual
    if plan == PlanType.pro:
        value = settings.stripe_price_id_pro_annual if annual else settings.stripe_price_id_pro
    else:
        value = settings.stripe_price_id_premium_annual if annual else settings.stripe_price_id_premium
    return (value or "").strip() or None


def stripe_price_env_name(plan: PlanType, period: BillingPeriod) -> str:
    suffix = "_ANNUAL" if period == BillingPeriod.annual else ""
    return f"STRIPE_PRICE_ID_{plan.value.upper()}{suffix}"


def wompi_payment_link(settings: Settings, plan: PlanType, period: BillingPeriod) -> str | None:
    if plan == PlanType.free:
        return None
    annual = period == BillingPeriod.annual
    if plan == PlanType.pro:
        value = settings.wompi_payment_link_pro_annual if annual else settings.wompi_payment_link_pro_monthly
    else:
        value = (
            settings.wompi_payment_link_premium_annual if annual else settings.wompi_payment_link_premium_monthly
        )
    return (value or "").strip() or None
