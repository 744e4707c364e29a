import enum


class PlanType(enum.Enum):
    free = "free"
    pro = "pro"
    premium = "premium"


class BillingPeriod(enum.Enum):
    monthly = "monthly"
    annual = "annual"


class SubscriptionStatus(enum.Enum):
    incomplete = "incomplete"
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    cancelled = "cancelled"


class PaymentProvider(enum.Enum):
    stripe = "stripe"
    wompi = "wompi"


class PaymentStatus(enum.Enum):
    succeeded = "succeeded"


class BillingAction(enum.Enum):
    SYNC_SUBSCRIPTION = "SYNC_SUBSCRIPTION"
    CANCEL_SUBSCRIPTION = "CANCEL_SUBSCRIPTION"
    RECORD_PAYMENT_SUCCESS = "RECORD_PAYMENT_SUCCESS"
    RECORD_PAYMENT_FAILURE = "RECORD_PAYMENT_FAILURE"
    IGNORE = "IGNORE"
