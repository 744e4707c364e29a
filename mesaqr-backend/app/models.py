from app.domain.billing.enums import (
    BillingAction,
    BillingPeriod,
    PaymentProvider,
    PaymentStatus,
    PlanType,
    SubscriptionStatus,
)
from app.domain.billing.models import Payment, Subscription
from app.domain.tenancy.models import Tenant

__all__ = [
    "BillingAction",
    "BillingPeriod",
    "PaymentProvider",
    "PaymentStatus",
    "PlanType",
    "SubscriptionStatus",
    "Tenant",
    "Subscription",
    "Payment",
]
