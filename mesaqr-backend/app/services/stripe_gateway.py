import logging
from functools import lru_cache

import stripe

from app.db import settings
from app.domain.billing.errors import PaymentDeclinedError, ProviderAPIError
from app.observability import log_billing_event

logger = logging.getLogger(__name__)


def _as_dict(obj) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


class StripeGateway:
    """Thin wrapper over the Stripe SDK calls used by the subscription flow.

    Every call goes out with this instance's API key. SDK errors are translated into
    billing errors: card problems become ``PaymentDeclinedError`` and anything else
    becomes ``ProviderAPIError``.
    """

    def __init__(self, api_key: str | None):
        self.api_key = api_key

    def _require_key(self) -> str:
        if not self.api_key:
            raise ProviderAPIError("stripe", "STRIPE_SECRET_KEY not configured")
        return self.api_key

    def _translate(self, operation: str, exc: stripe.StripeError) -> ProviderAPIError:
        upstream_status = getattr(exc, "http_status", None)
        message = getattr(exc, "user_message", None) or str(exc)
        if isinstance(exc, stripe.CardError):
            log_billing_event(
                logger,
                logging.WARNING,
                "stripe_card_declined",
                operation=operation,
                code=getattr(exc, "code", None),
                decline_code=getattr(exc, "decline_code", None),
            )
            return PaymentDeclinedError("stripe", message, upstream_status=upstream_status)
        log_billing_event(
            logger,
            logging.ERROR,
            "stripe_api_error",
            operation=operation,
            error_type=type(exc).__name__,
            upstream_status=upstream_status,
            error=message,
        )
        return ProviderAPIError("stripe", message, upstream_status=upstream_status)

    def find_or_create_customer(self, email: str, name: str, tenant_id: str) -> dict:
        api_key = self._require_key()
        try:
            existing = stripe.Customer.list(email=email, limit=1, api_key=api_key)
            if existing.data:
                return _as_dict(existing.data[0])
            customer = stripe.Customer.create(
                email=email,
                name=name,
                metadata={"tenant_id": tenant_id},
                api_key=api_key,
            )
        except stripe.StripeError as exc:
            raise self._translate("find_or_create_customer", exc) from exc
        return _as_dict(customer)

    def attach_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        api_key = self._require_key()
        try:
            stripe.PaymentMethod.attach(payment_method_id, customer=customer_id, api_key=api_key)
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
                api_key=api_key,
            )
        except stripe.StripeError as exc:
            raise self._translate("attach_payment_method", exc) from exc

    def create_subscription(self, customer_id: str, price_id: str) -> dict:
        api_key = self._require_key()
        try:
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                payment_settings={"save_default_payment_method": "on_subscription"},
                expand=["latest_invoice"],
                api_key=api_key,
            )
        except stripe.StripeError as exc:
            raise self._translate("create_subscription", exc) from exc
        return _as_dict(subscription)

    def retrieve_subscription(self, subscription_id: str, *, with_latest_invoice: bool = False) -> dict:
        api_key = self._require_key()
        expand = ["latest_invoice"] if with_latest_invoice else []
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, expand=expand, api_key=api_key)
        except stripe.StripeError as exc:
            raise self._translate("retrieve_subscription", exc) from exc
        return _as_dict(subscription)

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:
        api_key = self._require_key()
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel, api_key=api_key)
        except stripe.StripeError as exc:
            raise self._translate("set_cancel_at_period_end", exc) from exc

    def change_price(self, subscription_id: str, price_id: str) -> None:
        subscription = self.retrieve_subscription(subscription_id)
        items = (subscription.get("items") or {}).get("data") or []
        if not items:
            raise ProviderAPIError("stripe", f"Subscription {subscription_id} has no items")
        try:
            stripe.Subscription.modify(
                subscription_id,
                items=[{"id": items[0]["id"], "price": price_id}],
                api_key=self._require_key(),
            )
        except stripe.StripeError as exc:
            raise self._translate("change_price", exc) from exc


@lru_cache
def get_stripe_gateway() -> StripeGateway:
    return StripeGateway(settings.stripe_secret_key)
