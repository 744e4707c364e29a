"""Normalization of Stripe and Wompi payloads into one canonical billing event."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from app.domain.billing.enums import BillingAction, PaymentProvider, SubscriptionStatus


@dataclass(frozen=True, slots=True)
class CanonicalEvent:
    provider: PaymentProvider
    type: BillingAction
    event_type: str
    external_transaction_id: str | None = None
    external_subject_id: str | None = None
    reference: str | None = None
    amount_minor_units: int | None = None
    currency: str | None = None
    raw_status: str | None = None
    external_payment_id: str | None = None
    target_status: SubscriptionStatus | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    paid_at: datetime | None = None

    @property
    def is_ignored(self) -> bool:
        return self.type == BillingAction.IGNORE

    def log_context(self) -> dict:
        context = asdict(self)
        context["provider"] = self.provider.value
        context["type"] = self.type.value
        if self.target_status is not None:
            context["target_status"] = self.target_status.value
        return context


STRIPE_SUBSCRIPTION_STATUSES = {
    "active": SubscriptionStatus.active,
    "trialing": SubscriptionStatus.trialing,
    "past_due": SubscriptionStatus.past_due,
    "unpaid": SubscriptionStatus.past_due,
    "incomplete": SubscriptionStatus.incomplete,
    "incomplete_expired": SubscriptionStatus.cancelled,
    "canceled": SubscriptionStatus.cancelled,
}

WOMPI_TRANSACTION_STATUSES = {
    "APPROVED": (BillingAction.RECORD_PAYMENT_SUCCESS, SubscriptionStatus.active),
    "APPROVED_PARTIAL": (BillingAction.RECORD_PAYMENT_SUCCESS, SubscriptionStatus.active),
    "DECLINED": (BillingAction.RECORD_PAYMENT_FAILURE, SubscriptionStatus.past_due),
    "VOIDED": (BillingAction.RECORD_PAYMENT_FAILURE, SubscriptionStatus.past_due),
    "ERROR": (BillingAction.RECORD_PAYMENT_FAILURE, SubscriptionStatus.past_due),
    "PENDING": (BillingAction.SYNC_SUBSCRIPTION, SubscriptionStatus.incomplete),
}

WOMPI_TRANSACTION_EVENTS = ("transaction.updated", "transaction.status_changed")


def _text(value: object) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _int(value: object) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _from_unix(value: object) -> datetime | None:
    seconds = _int(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _from_iso(value: object) -> datetime | None:
    cleaned = _text(value)
    if cleaned is None:
        return None
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _upper(value: object) -> str | None:
    cleaned = _text(value)
    return cleaned.upper() if cleaned else None


def ignored(provider: PaymentProvider, event_type: str | None, raw_status: str | None = None) -> CanonicalEvent:
    return CanonicalEvent(
        provider=provider,
        type=BillingAction.IGNORE,
        event_type=event_type or "unknown",
        raw_status=raw_status,
    )


# Stripe


def _stripe_subscription_period(obj: dict) -> tuple[datetime | None, datetime | None]:
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if start is None or end is None:
        # Newer API versions carry the period on the subscription items.
        items = (obj.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return _from_unix(start), _from_unix(end)


def _stripe_invoice_subscription_id(invoice: dict) -> str | None:
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return _text(subscription)
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _text(details.get("subscription"))


def stripe_subscription_event(event_type: str, subscription: dict) -> CanonicalEvent:
    raw_status = _text(subscription.get("status"))
    period_start, period_end = _stripe_subscription_period(subscription)
    if event_type == "customer.subscription.deleted":
        action = BillingAction.CANCEL_SUBSCRIPTION
        target = SubscriptionStatus.cancelled
    else:
        target = STRIPE_SUBSCRIPTION_STATUSES.get(raw_status or "")
        if target is None:
            return ignored(PaymentProvider.stripe, event_type, raw_status)
        if target == SubscriptionStatus.cancelled:
            action = BillingAction.CANCEL_SUBSCRIPTION
        else:
            action = BillingAction.SYNC_SUBSCRIPTION
    return CanonicalEvent(
        provider=PaymentProvider.stripe,
        type=action,
        event_type=event_type,
        external_transaction_id=_text(subscription.get("id")),
        external_subject_id=_text(subscription.get("customer")),
        raw_status=raw_status,
        target_status=target,
        period_start=period_start,
        period_end=period_end,
    )


def stripe_invoice_event(event_type: str, invoice: dict) -> CanonicalEvent:
    succeeded = event_type == "invoice.payment_succeeded"
    amount = invoice.get("amount_paid") if succeeded else invoice.get("amount_due")
    paid_at = _from_unix((invoice.get("status_transitions") or {}).get("paid_at"))
    return CanonicalEvent(
        provider=PaymentProvider.stripe,
        type=BillingAction.RECORD_PAYMENT_SUCCESS if succeeded else BillingAction.RECORD_PAYMENT_FAILURE,
        event_type=event_type,
        external_transaction_id=_stripe_invoice_subscription_id(invoice),
        external_subject_id=_text(invoice.get("customer")),
        amount_minor_units=_int(amount),
        currency=_upper(invoice.get("currency")),
        raw_status=_text(invoice.get("status")),
        external_payment_id=_text(invoice.get("id")),
        target_status=SubscriptionStatus.active if succeeded else SubscriptionStatus.past_due,
        paid_at=paid_at,
    )


def normalize_stripe_event(event: dict) -> CanonicalEvent:
    event_type = _text(event.get("type")) or "unknown"
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        return ignored(PaymentProvider.stripe, event_type)
    if event_type in (
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ):
        return stripe_subscription_event(event_type, obj)
    if event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
        return stripe_invoice_event(event_type, obj)
    return ignored(PaymentProvider.stripe, event_type)


# Wompi


def wompi_transaction_event(transaction: dict, event_type: str = "transaction.updated") -> CanonicalEvent:
    raw_status = _upper(transaction.get("status"))
    mapped = WOMPI_TRANSACTION_STATUSES.get(raw_status or "")
    if mapped is None:
        return ignored(PaymentProvider.wompi, event_type, raw_status)
    action, target = mapped
    transaction_id = _text(transaction.get("id"))
    paid_at = None
    if action == BillingAction.RECORD_PAYMENT_SUCCESS:
        paid_at = _from_iso(transaction.get("finalized_at"))
    return CanonicalEvent(
        provider=PaymentProvider.wompi,
        type=action,
        event_type=event_type,
        external_transaction_id=transaction_id,
        external_subject_id=_text(transaction.get("customer_email")),
        reference=_text(transaction.get("reference")),
        amount_minor_units=_int(transaction.get("amount_in_cents")),
        currency=_upper(transaction.get("currency")) or "COP",
        raw_status=raw_status,
        external_payment_id=transaction_id,
        target_status=target,
        paid_at=paid_at,
    )


def normalize_wompi_event(event: dict) -> CanonicalEvent:
    event_type = _text(event.get("event")) or "unknown"
    if event_type not in WOMPI_TRANSACTION_EVENTS:
        return ignored(PaymentProvider.wompi, event_type)
    data = event.get("data")
    if not isinstance(data, dict):
        return ignored(PaymentProvider.wompi, event_type)
    transaction = data.get("transaction") if isinstance(data.get("transaction"), dict) else data
    if not isinstance(transaction, dict) or not transaction.get("id"):
        return ignored(PaymentProvider.wompi, event_type)
    return wompi_transaction_event(transaction, event_type)
