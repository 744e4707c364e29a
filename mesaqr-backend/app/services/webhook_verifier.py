"""Authenticity checks for inbound payment-provider webhooks.

Both checks work on the raw request bytes exactly as received. The body must not be
parsed and re-serialized before hashing: a re-encoded JSON document is not
byte-identical to what the provider signed.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging

import stripe

from app.domain.billing.errors import VerificationError
from app.observability import log_billing_event

logger = logging.getLogger(__name__)


def _normalize_signature(signature: str | None) -> str | None:
    if not signature:
        return None
    cleaned = signature.strip()
    if cleaned.startswith("sha256="):
        cleaned = cleaned.split("=", 1)[1]
    return cleaned or None


def compute_hmac_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_hmac_signature(
    raw_body: bytes,
    signature: str | None,
    secret: str | None,
    *,
    production: bool,
    provider: str = "wompi",
) -> None:
    """Raise VerificationError unless ``signature`` is the HMAC-SHA256 of ``raw_body``.

    With a secret configured but no signature header, production rejects while other
    environments log a warning and let the delivery through.
    """
    if not secret:
        return
    normalized = _normalize_signature(signature)
    if normalized is None:
        if production:
            log_billing_event(logger, logging.ERROR, "webhook_signature_missing", provider=provider)
            raise VerificationError("Missing signature", status_code=401)
        log_billing_event(
            logger,
            logging.WARNING,
            "webhook_signature_missing_allowed",
            provider=provider,
            reason="non-production environment",
        )
        return
    expected = compute_hmac_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode(), normalized.encode("utf-8", "surrogateescape")):
        log_billing_event(logger, logging.ERROR, "webhook_signature_invalid", provider=provider)
        raise VerificationError("Invalid signature", status_code=401)


def verify_stripe_event(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance: int = 300,
) -> dict:
    """Validate a Stripe-Signature header, then parse and return the event payload."""
    if not signature_header or not secret:
        log_billing_event(
            logger,
            logging.ERROR,
            "webhook_signature_missing",
            provider="stripe",
            has_signature=bool(signature_header),
            has_secret=bool(secret),
        )
        raise VerificationError("Webhook Error: Missing signature or secret", status_code=400)
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise VerificationError("Webhook Error: Invalid payload", status_code=400) from exc
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        log_billing_event(logger, logging.ERROR, "webhook_signature_invalid", provider="stripe", error=str(exc))
        raise VerificationError(f"Webhook Error: {exc}", status_code=400) from exc
    try:
        event = json.loads(payload)
    except json.JSONDecodeError as exc:
        log_billing_event(logger, logging.ERROR, "webhook_payload_invalid", provider="stripe", error=str(exc))
        raise VerificationError("Webhook Error: Invalid payload", status_code=400) from exc
    if not isinstance(event, dict):
        raise VerificationError("Webhook Error: Invalid payload", status_code=400)
    return event
