from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.services.billing_events import CanonicalEvent


class BillingError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class VerificationError(BillingError):
    """Webhook authenticity could not be established; the delivery is rejected."""

    def __init__(self, detail: str, status_code: int = 401):
        super().__init__(detail)
        self.status_code = status_code


class UnmatchedEventError(BillingError):
    def __init__(self, event: "CanonicalEvent"):
        super().__init__("No subscription matched the event")
        self.event = event


class InvalidTransitionError(BillingError):
    pass


class TenantNotFoundError(BillingError):
    status_code = 404


class InvalidTenantContactError(BillingError):
    status_code = 400


class SubscriptionNotFoundError(BillingError):
    status_code = 404


class SubscriptionConflictError(BillingError):
    status_code = 409


class InvalidPaymentMethodError(BillingError):
    status_code = 400


class ProviderAPIError(BillingError):
    """A payment provider call failed (network, 5xx, unusable response)."""

    status_code = 500
    default_user_message = "Ocurrió un error al procesar tu pago. Por favor, intenta nuevamente o contacta a soporte"

    def __init__(
        self,
        provider: str,
        detail: str,
        *,
        upstream_status: int | None = None,
        user_message: str | None = None,
    ):
        super().__init__(detail)
        self.provider = provider
        self.upstream_status = upstream_status
        self.user_message = user_message or self.default_user_message


class PaymentDeclinedError(ProviderAPIError):
    status_code = 400
    default_user_message = (
        "Tu pago no pudo ser procesado. Por favor, verifica los datos de tu tarjeta e intenta nuevamente"
    )


class EmptyUpdateError(BillingError):
    status_code = 400


class InvalidPlanError(BillingError):
    status_code = 400


class PaymentLinkNotConfiguredError(BillingError):
    status_code = 404
