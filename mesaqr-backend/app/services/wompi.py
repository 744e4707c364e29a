import logging
import time
from functools import lru_cache

import httpx

from app.db import settings
from app.domain.billing.errors import ProviderAPIError
from app.observability import log_billing_event

logger = logging.getLogger(__name__)

_http_timeout = httpx.Timeout(15.0, connect=5.0)

CARD_FIELDS = ("number", "cvc", "exp_month", "exp_year", "card_holder")


def build_reference(tenant_id: str, now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"SUB_{tenant_id}_{now_ms}"


class WompiClient:
    """Blocking client for the Wompi REST endpoints used when charging a card."""

    def __init__(
        self,
        api_url: str,
        private_key: str | None,
        acceptance_token: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.private_key = private_key
        self.acceptance_token = acceptance_token
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self.private_key:
            raise ProviderAPIError("wompi", "WOMPI_PRIVATE_KEY not configured")
        return {"Authorization": f"Bearer {self.private_key}"}

    def _request(self, method: str, path: str, operation: str, json: dict | None = None) -> dict:
        headers = self._headers()
        try:
            with httpx.Client(timeout=_http_timeout, transport=self._transport) as client:
                response = client.request(method, f"{self.api_url}{path}", json=json, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            message = _error_message(exc.response)
            log_billing_event(
                logger,
                logging.ERROR,
                "wompi_api_error",
                operation=operation,
                upstream_status=exc.response.status_code,
                error=message,
            )
            raise ProviderAPIError(
                "wompi",
                message or f"Wompi {operation} failed with status {exc.response.status_code}",
                upstream_status=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            log_billing_event(logger, logging.ERROR, "wompi_api_unreachable", operation=operation, error=str(exc))
            raise ProviderAPIError("wompi", f"Wompi {operation} failed: {exc}") from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or not data.get("id"):
            log_billing_event(logger, logging.ERROR, "wompi_invalid_response", operation=operation)
            raise ProviderAPIError("wompi", f"Invalid Wompi response for {operation}")
        return data

    def create_token(self, card_data: dict) -> str:
        body = {field: card_data.get(field) for field in CARD_FIELDS}
        body["acceptance_token"] = self.acceptance_token
        data = self._request("POST", "/tokens/cards", "create_token", json=body)
        return str(data["id"])

    def create_transaction(
        self,
        token: str,
        amount_in_cents: int,
        customer_email: str,
        reference: str,
    ) -> dict:
        body = {
            "amount_in_cents": amount_in_cents,
            "currency": "COP",
            "customer_email": customer_email,
            "payment_method": {"type": "CARD", "token": token, "installments": 1},
            "reference": reference,
            "acceptance_token": self.acceptance_token,
        }
        data = self._request("POST", "/transactions", "create_transaction", json=body)
        log_billing_event(
            logger,
            logging.INFO,
            "wompi_transaction_created",
            transaction_id=data.get("id"),
            status=data.get("status"),
            reference=reference,
            amount_in_cents=amount_in_cents,
        )
        return data

    def get_transaction(self, transaction_id: str) -> dict:
        return self._request("GET", f"/transactions/{transaction_id}", "get_transaction")


def _error_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("reason") or error.get("type") or error.get("message")
    return body.get("message")


@lru_cache
def get_wompi_client() -> WompiClient:
    return WompiClient(
        settings.wompi_api_url,
        settings.wompi_private_key,
        settings.wompi_acceptance_token or settings.wompi_public_key,
    )
