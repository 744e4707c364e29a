"""
Side effects of reconciliation: payment confirmation emails and operator alerts.
Both run as background tasks after the response; a failure is logged once and never
reaches the reconciliation path.
"""
import asyncio
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from functools import lru_cache

import httpx

from app import models
from app.db import Settings, settings
from app.services.billing_events import CanonicalEvent

logger = logging.getLogger(__name__)

PROVIDER_NAMES = {
    models.PaymentProvider.stripe: "Stripe",
    models.PaymentProvider.wompi: "Wompi",
}


@dataclass(frozen=True, slots=True)
class PaymentConfirmation:
    to_email: str
    tenant_name: str
    plan: models.PlanType
    amount_minor_units: int
    currency: str
    provider: models.PaymentProvider
    external_payment_id: str
    paid_at: datetime | None

    @classmethod
    def from_payment(
        cls,
        tenant: models.Tenant,
        subscription: models.Subscription,
        payment: models.Payment,
    ) -> "PaymentConfirmation | None":
        if not tenant.contact_email:
            return None
        return cls(
            to_email=tenant.contact_email,
            tenant_name=tenant.name,
            plan=subscription.plan_type,
            amount_minor_units=payment.amount_minor_units,
            currency=payment.currency,
            provider=payment.provider,
            external_payment_id=payment.external_payment_id,
            paid_at=payment.paid_at,
        )


def format_amount(amount_minor_units: int, currency: str) -> str:
    major = amount_minor_units / 100
    if currency.upper() == "COP":
        return f"${major:,.0f} COP".replace(",", ".")
    return f"${major:,.2f} {currency.upper()}"


def build_confirmation_message(sender: str, confirmation: PaymentConfirmation) -> MIMEMultipart:
    paid_at = confirmation.paid_at.strftime("%d/%m/%Y %H:%M") if confirmation.paid_at else "-"
    body = f"""Hola {confirmation.tenant_name},

Tu pago ha sido procesado exitosamente. Tu suscripción está ahora activa.

Plan: {confirmation.plan.value.upper()}
Monto: {format_amount(confirmation.amount_minor_units, confirmation.currency)}
Proveedor: {PROVIDER_NAMES.get(confirmation.provider, confirmation.provider.value)}
Referencia: {confirmation.external_payment_id}
Fecha: {paid_at}

---
Este es un correo automático, por favor no respondas a este mensaje.
"""
    message = MIMEMultipart()
    message["From"] = sender
    message["To"] = confirmation.to_email
    message["Subject"] = f"Pago confirmado - Plan {confirmation.plan.value.upper()}"
    message.attach(MIMEText(body, "plain", "utf-8"))
    return message


def format_unmatched_alert(event: CanonicalEvent) -> str:
    lines = [
        "*Evento de pago sin suscripción*",
        f"Proveedor: {event.provider.value}",
        f"Tipo: {event.event_type}",
        f"Estado: {event.raw_status or '-'}",
        f"Transacción: {event.external_transaction_id or '-'}",
        f"Referencia: {event.reference or '-'}",
    ]
    if event.amount_minor_units is not None:
        lines.append(f"Monto: {format_amount(event.amount_minor_units, event.currency or 'COP')}")
    return "\n".join(lines)


class BillingNotifier:
    def __init__(self, config: Settings):
        self.smtp_server = config.smtp_server
        self.smtp_port = config.smtp_port
        self.sender_email = config.sender_email
        self.sender_password = config.sender_password
        self.telegram_bot_token = config.telegram_bot_token
        self.telegram_chat_id = config.telegram_chat_id

    def send_payment_confirmation(self, confirmation: PaymentConfirmation) -> bool:
        if not self.sender_email or not self.sender_password:
            logger.info("Payment confirmation skipped: SENDER_EMAIL/SENDER_PASSWORD not configured")
            return False
        message = build_confirmation_message(self.sender_email, confirmation)
        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port) as server:
                server.starttls()
                server.login(self.sender_email, self.sender_password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError):
            logger.exception(
                "Payment confirmation email failed to=%s payment=%s",
                confirmation.to_email,
                confirmation.external_payment_id,
            )
            return False
        logger.info(
            "Payment confirmation email sent to=%s payment=%s",
            confirmation.to_email,
            confirmation.external_payment_id,
        )
        return True

    async def alert_unmatched_event(self, event: CanonicalEvent) -> None:
        if not self.telegram_bot_token or not self.telegram_chat_id:
            logger.info("Telegram alert skipped: missing token/chat_id")
            return

        url = f"https://api.telegram.org/bot{self.telegram_bot_token}/sendMessage"
        payload = {
            "chat_id": self.telegram_chat_id,
            "text": format_unmatched_alert(event),
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        }
        timeouts = [10, 10, 10]
        backoffs = [0.5, 1.0]
        for attempt in range(3):
            try:
                async with httpx.AsyncClient(timeout=timeouts[attempt]) as client:
                    response = await client.post(url, json=payload)
                    response.raise_for_status()
                    return
            except httpx.HTTPStatusError as exc:
                logger.warning(
                    "Telegram alert failed (attempt %s) status=%s body=%s",
                    attempt + 1,
                    exc.response.status_code,
                    exc.response.text,
                )
            except httpx.HTTPError:
                logger.exception("Failed to send Telegram alert (attempt %s)", attempt + 1)
            if attempt < len(backoffs):
                await asyncio.sleep(backoffs[attempt])


@lru_cache
def get_notifier() -> BillingNotifier:
    return BillingNotifier(settings)
