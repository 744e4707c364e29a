from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app import models
from app.domain.billing.plans import plan_limits


# Subscriptions


class PlanLimitsOut(BaseModel):
    max_items: int
    max_tables: int
    max_users: int
    max_categories: int
    realtime: bool
    reservations: bool
    analytics: bool

    class Config:
        from_attributes = True


class SubscriptionOut(BaseModel):
    id: str
    tenant_id: str
    plan_type: models.PlanType
    billing_period: models.BillingPeriod
    status: models.SubscriptionStatus
    external_provider: Optional[models.PaymentProvider] = None
    external_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    limits: Optional[PlanLimitsOut] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_model(cls, subscription: models.Subscription) -> "SubscriptionOut":
        out = cls.model_validate(subscription)
        out.limits = PlanLimitsOut.model_validate(plan_limits(subscription.plan_type))
        return out


class SubscriptionCreateIn(BaseModel):
    tenant_id: str = Field(min_length=1)
    plan_type: models.PlanType
    annual: bool = False
    payment_provider: models.PaymentProvider = models.PaymentProvider.stripe
    # Stripe payment method id, Wompi card token, or Wompi card data as JSON.
    payment_method_id: Optional[str] = None

    @property
    def billing_period(self) -> models.BillingPeriod:
        return models.BillingPeriod.annual if self.annual else models.BillingPeriod.monthly


class SubscriptionUpdateIn(BaseModel):
    plan_type: Optional[models.PlanType] = None
    cancel_at_period_end: Optional[bool] = None


class PaymentLinkOut(BaseModel):
    url: str
    reference: str
    plan_type: models.PlanType
    billing_period: models.BillingPeriod


# Webhooks


class WebhookAck(BaseModel):
    received: bool = True
