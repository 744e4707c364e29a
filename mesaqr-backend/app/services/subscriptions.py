"""
Synchronous subscription flows: creation and upgrade with an immediate charge, updates
requested by the tenant, and Wompi payment links.

The charge runs before any row is written, so a declined or failed charge leaves the
stored subscription exactly as it was. Once a provider settles, the result goes through
the same state machine and ledger as the webhook path.
"""
import calendar
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from app import models, schemas
from app.db import Settings, settings
from app.domain.billing.enums import BillingAction, BillingPeriod, PaymentProvider, PlanType, SubscriptionStatus
from app.domain.billing.errors import (
    EmptyUpdateError,
    InvalidPaymentMethodError,
    InvalidPlanError,
    PaymentDeclinedError,
    PaymentLinkNotConfiguredError,
    ProviderAPIError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from app.domain.billing.models import utcnow
from app.domain.billing.plans import (
    FREE_PLAN_YEARS,
    PAID_PLANS,
    is_downgrade,
    plan_price_minor_units,
    stripe_price_env_name,
    stripe_price_id,
    wompi_payment_link,
)
from app.observability import log_billing_event
from app.phone import has_usable_phone
from app.services.billing_events import (
    CanonicalEvent,
    stripe_invoice_event,
    stripe_subscription_event,
    wompi_transaction_event,
)
from app.services.payment_ledger import record_payment
from app.services.stripe_gateway import StripeGateway
from app.services.subscription_state import ACTIVE_LIKE, apply_event, mirror_tenant_state
from app.services.wompi import WompiClient, build_reference
from app.tenancy import get_billable_tenant

logger = logging.getLogger(__name__)

INVALID_CARD_FORMAT = "Formato de datos de tarjeta inválido. Por favor, intenta nuevamente."
CARD_TOKEN_FAILED = (
    "No pudimos procesar tu tarjeta. Por favor, verifica que los datos sean correctos e intenta nuevamente"
)


@dataclass(frozen=True, slots=True)
class ChargeResult:
    subscription: models.Subscription
    payment: models.Payment | None = None
    payment_created: bool = False


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def billing_period_bounds(period: BillingPeriod, start: datetime | None = None) -> tuple[datetime, datetime]:
    start = start or utcnow()
    months = 12 if period == BillingPeriod.annual else 1
    return start, _add_months(start, months)


def get_subscription_for_tenant(db: Session, tenant_id: str) -> models.Subscription | None:
    return (
        db.query(models.Subscription)
        .filter(models.Subscription.tenant_id == tenant_id)
        .order_by(models.Subscription.created_at.desc())
        .first()
    )


def _reusable_row(existing: models.Subscription | None, requested: PlanType) -> models.Subscription | None:
    """Row the request will update in place, or None when a new row must be created.

    Raises SubscriptionConflictError for a repeat of the current plan or a downgrade.
    """
    if existing is None or existing.status == SubscriptionStatus.cancelled:
        return None
    if existing.status == SubscriptionStatus.incomplete:
        return existing
    if existing.plan_type == requested and existing.status in ACTIVE_LIKE:
        raise SubscriptionConflictError("Ya tienes una suscripción activa con este plan")
    if is_downgrade(existing.plan_type, requested):
        raise SubscriptionConflictError(
            "No puedes cambiar a un plan inferior. Cancela tu suscripción actual primero."
        )
    return existing


def _write_row(
    db: Session,
    tenant: models.Tenant,
    row: models.Subscription | None,
    plan: PlanType,
    period: BillingPeriod,
    *,
    status: SubscriptionStatus,
    period_start: datetime,
    period_end: datetime,
    provider: PaymentProvider | None = None,
    external_id: str | None = None,
    external_customer_id: str | None = None,
) -> models.Subscription:
    if row is None:
        row = models.Subscription(id=str(uuid.uuid4()), tenant_id=tenant.id)
        row.tenant = tenant
        db.add(row)
        log_billing_event(logger, logging.INFO, "subscription_row_created", tenant_id=tenant.id, plan=plan.value)
    else:
        log_billing_event(
            logger,
            logging.INFO,
            "subscription_row_updated",
            tenant_id=tenant.id,
            subscription_id=row.id,
            previous_plan=row.plan_type.value if row.plan_type else None,
            plan=plan.value,
        )
    row.plan_type = plan
    row.billing_period = period
    row.status = status
    row.external_provider = provider
    row.external_id = external_id
    row.external_customer_id = external_customer_id
    row.current_period_start = period_start
    row.current_period_end = period_end
    row.cancel_at_period_end = False
    row.cancelled_at = None
    mirror_tenant_state(row)
    db.flush()
    return row


def _parse_wompi_token(raw: str, wompi_client: WompiClient) -> str:
    """Return a Wompi card token from either an opaque token or ``{"type": "wompi", "cardData": {...}}``."""
    candidate = raw.strip()
    if candidate.startswith("{"):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            logger.error("Wompi payment method looks like JSON but cannot be parsed")
            raise InvalidPaymentMethodError(INVALID_CARD_FORMAT)
        card_data = parsed.get("cardData") if isinstance(parsed, dict) else None
        if not isinstance(parsed, dict) or parsed.get("type") != "wompi" or not isinstance(card_data, dict):
            logger.error("Wompi payment method JSON has an unexpected structure")
            raise InvalidPaymentMethodError(INVALID_CARD_FORMAT)
        try:
            candidate = wompi_client.create_token(card_data).strip()
        except ProviderAPIError as exc:
            raise InvalidPaymentMethodError(CARD_TOKEN_FAILED) from exc
    if not candidate or candidate.startswith("{"):
        raise InvalidPaymentMethodError("Error: Token de tarjeta inválido. Por favor, intenta nuevamente.")
    return candidate


def _settle_wompi_transaction(
    wompi_client: WompiClient,
    transaction: dict,
    *,
    delay_seconds: float,
    sleep: Callable[[float], None],
) -> dict:
    """Re-read a PENDING transaction exactly once after ``delay_seconds``."""
    if str(transaction.get("status") or "").upper() != "PENDING":
        return transaction
    transaction_id = str(transaction["id"])
    sleep(delay_seconds)
    try:
        refreshed = wompi_client.get_transaction(transaction_id)
    except ProviderAPIError as exc:
        log_billing_event(
            logger,
            logging.WARNING,
            "wompi_recheck_failed",
            transaction_id=transaction_id,
            error=exc.detail,
        )
        return transaction
    log_billing_event(
        logger,
        logging.INFO,
        "wompi_recheck_completed",
        transaction_id=transaction_id,
        original_status="PENDING",
        status=refreshed.get("status"),
    )
    return {**transaction, **refreshed}


def _charge_wompi(
    db: Session,
    tenant: models.Tenant,
    row: models.Subscription | None,
    plan: PlanType,
    period: BillingPeriod,
    payment_method_id: str,
    *,
    wompi_client: WompiClient,
    config: Settings,
    sleep: Callable[[float], None],
) -> ChargeResult:
    token = _parse_wompi_token(payment_method_id, wompi_client)
    reference = build_reference(tenant.id)
    amount = plan_price_minor_units(plan, period, "COP")
    transaction = wompi_client.create_transaction(token, amount, tenant.contact_email, reference)
    transaction = _settle_wompi_transaction(
        wompi_client,
        transaction,
        delay_seconds=config.wompi_settle_recheck_seconds,
        sleep=sleep,
    )
    transaction.setdefault("reference", reference)
    transaction.setdefault("amount_in_cents", amount)

    event = wompi_transaction_event(transaction, event_type="charge.settled")
    if event.type not in (BillingAction.RECORD_PAYMENT_SUCCESS, BillingAction.SYNC_SUBSCRIPTION):
        log_billing_event(
            logger,
            logging.WARNING,
            "wompi_charge_declined",
            tenant_id=tenant.id,
            transaction_id=event.external_transaction_id,
            raw_status=event.raw_status,
            reference=reference,
        )
        raise PaymentDeclinedError("wompi", f"Wompi transaction {event.external_transaction_id} {event.raw_status}")
    if event.type == BillingAction.SYNC_SUBSCRIPTION:
        log_billing_event(
            logger,
            logging.WARNING,
            "wompi_charge_pending",
            tenant_id=tenant.id,
            transaction_id=event.external_transaction_id,
            reference=reference,
        )

    period_start, period_end = billing_period_bounds(period)
    subscription = _write_row(
        db,
        tenant,
        row,
        plan,
        period,
        status=SubscriptionStatus.incomplete,
        period_start=period_start,
        period_end=period_end,
        provider=PaymentProvider.wompi,
        external_id=event.external_transaction_id,
    )
    apply_event(db, subscription, event, auto_commit=False)
    payment, created = record_payment(db, subscription, event)
    db.commit()
    db.refresh(subscription)
    return ChargeResult(subscription=subscription, payment=payment, payment_created=created)


def _latest_paid_invoice(
    stripe_gateway: StripeGateway,
    stripe_subscription: dict,
) -> dict | None:
    invoice = stripe_subscription.get("latest_invoice")
    if not isinstance(invoice, dict):
        try:
            refreshed = stripe_gateway.retrieve_subscription(stripe_subscription["id"], with_latest_invoice=True)
        except ProviderAPIError as exc:
            log_billing_event(
                logger,
                logging.WARNING,
                "stripe_invoice_lookup_failed",
                subscription_id=stripe_subscription.get("id"),
                error=exc.detail,
            )
            return None
        invoice = refreshed.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    if invoice.get("status") != "paid" or not invoice.get("amount_paid"):
        return None
    return invoice


def _charge_stripe(
    db: Session,
    tenant: models.Tenant,
    row: models.Subscription | None,
    plan: PlanType,
    period: BillingPeriod,
    payment_method_id: str,
    *,
    stripe_gateway: StripeGateway,
    config: Settings,
) -> ChargeResult:
    price_id = stripe_price_id(config, plan, period)
    if not price_id:
        label = "anual" if period == BillingPeriod.annual else "mensual"
        raise ProviderAPIError(
            "stripe",
            f"El plan {plan.value} ({label}) no tiene un precio configurado en Stripe. "
            f"Por favor, configura {stripe_price_env_name(plan, period)} en las variables de entorno.",
        )

    customer = stripe_gateway.find_or_create_customer(tenant.contact_email, tenant.name, tenant.id)
    stripe_gateway.attach_payment_method(customer["id"], payment_method_id)
    stripe_subscription = stripe_gateway.create_subscription(customer["id"], price_id)

    event = stripe_subscription_event("customer.subscription.created", stripe_subscription)
    if event.is_ignored or event.target_status == SubscriptionStatus.cancelled:
        raise PaymentDeclinedError("stripe", f"Stripe subscription created with status {event.raw_status}")

    default_start, default_end = billing_period_bounds(period)
    subscription = _write_row(
        db,
        tenant,
        row,
        plan,
        period,
        status=SubscriptionStatus.incomplete,
        period_start=event.period_start or default_start,
        period_end=event.period_end or default_end,
        provider=PaymentProvider.stripe,
        external_id=event.external_transaction_id,
        external_customer_id=customer["id"],
    )
    apply_event(db, subscription, event, auto_commit=False)

    payment, created = None, False
    invoice = _latest_paid_invoice(stripe_gateway, stripe_subscription)
    if invoice is not None:
        invoice_event = stripe_invoice_event("invoice.payment_succeeded", invoice)
        payment, created = record_payment(db, subscription, invoice_event)
    db.commit()
    db.refresh(subscription)
    return ChargeResult(subscription=subscription, payment=payment, payment_created=created)


def create_subscription(
    db: Session,
    payload: schemas.SubscriptionCreateIn,
    *,
    stripe_gateway: StripeGateway,
    wompi_client: WompiClient,
    config: Settings = settings,
    sleep: Callable[[float], None] = time.sleep,
) -> ChargeResult:
    tenant = get_billable_tenant(db, payload.tenant_id)
    plan = payload.plan_type
    period = payload.billing_period

    if plan != PlanType.free and not has_usable_phone(tenant.contact_phone):
        log_billing_event(logger, logging.WARNING, "tenant_phone_missing", tenant_id=tenant.id)

    existing = get_subscription_for_tenant(db, tenant.id)
    row = _reusable_row(existing, plan)

    if plan == PlanType.free:
        start = utcnow()
        subscription = _write_row(
            db,
            tenant,
            row,
            plan,
            BillingPeriod.monthly,
            status=SubscriptionStatus.active,
            period_start=start,
            period_end=start + timedelta(days=365 * FREE_PLAN_YEARS),
        )
        db.commit()
        db.refresh(subscription)
        return ChargeResult(subscription=subscription)

    payment_method_id = (payload.payment_method_id or "").strip()
    if not payment_method_id:
        if payload.payment_provider != PaymentProvider.wompi:
            raise InvalidPaymentMethodError("Se requiere un método de pago para planes de pago")
        # Payment-link flow: settlement arrives later through the webhook.
        period_start, period_end = billing_period_bounds(period)
        subscription = _write_row(
            db,
            tenant,
            row,
            plan,
            period,
            status=SubscriptionStatus.incomplete,
            period_start=period_start,
            period_end=period_end,
        )
        db.commit()
        db.refresh(subscription)
        log_billing_event(
            logger,
            logging.INFO,
            "subscription_awaiting_payment_link",
            tenant_id=tenant.id,
            subscription_id=subscription.id,
            plan=plan.value,
        )
        return ChargeResult(subscription=subscription)

    if payload.payment_provider == PaymentProvider.wompi:
        return _charge_wompi(
            db,
            tenant,
            row,
            plan,
            period,
            payment_method_id,
            wompi_client=wompi_client,
            config=config,
            sleep=sleep,
        )
    return _charge_stripe(
        db,
        tenant,
        row,
        plan,
        period,
        payment_method_id,
        stripe_gateway=stripe_gateway,
        config=config,
    )


def update_subscription(
    db: Session,
    subscription_id: str,
    payload: schemas.SubscriptionUpdateIn,
    *,
    stripe_gateway: StripeGateway,
    config: Settings = settings,
) -> models.Subscription:
    subscription = db.get(models.Subscription, subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError("Suscripción no encontrada")

    on_stripe = subscription.external_provider == PaymentProvider.stripe and bool(subscription.external_id)
    changed = False

    if payload.cancel_at_period_end is not None:
        subscription.cancel_at_period_end = payload.cancel_at_period_end
        if payload.cancel_at_period_end:
            subscription.cancelled_at = utcnow()
        elif subscription.status != SubscriptionStatus.cancelled:
            subscription.cancelled_at = None
        changed = True
        if on_stripe:
            try:
                stripe_gateway.set_cancel_at_period_end(subscription.external_id, payload.cancel_at_period_end)
            except ProviderAPIError as exc:
                log_billing_event(
                    logger,
                    logging.ERROR,
                    "stripe_cancel_update_failed",
                    subscription_id=subscription.id,
                    error=exc.detail,
                )

    if payload.plan_type is not None and payload.plan_type != subscription.plan_type:
        subscription.plan_type = payload.plan_type
        changed = True
        price_id = stripe_price_id(config, payload.plan_type, subscription.billing_period)
        if on_stripe and price_id:
            try:
                stripe_gateway.change_price(subscription.external_id, price_id)
            except ProviderAPIError as exc:
                log_billing_event(
                    logger,
                    logging.ERROR,
                    "stripe_plan_change_failed",
                    subscription_id=subscription.id,
                    error=exc.detail,
                )

    if not changed:
        raise EmptyUpdateError("No hay campos para actualizar")

    db.commit()
    db.refresh(subscription)
    log_billing_event(
        logger,
        logging.INFO,
        "subscription_updated",
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        plan=subscription.plan_type.value,
        cancel_at_period_end=subscription.cancel_at_period_end,
    )
    return subscription


def build_wompi_payment_link(
    plan: PlanType,
    annual: bool,
    tenant_id: str,
    *,
    config: Settings = settings,
) -> schemas.PaymentLinkOut:
    if plan not in PAID_PLANS:
        raise InvalidPlanError("Plan inválido. Debe ser 'pro' o 'premium'")
    period = BillingPeriod.annual if annual else BillingPeriod.monthly
    link = wompi_payment_link(config, plan, period)
    if not link:
        raise PaymentLinkNotConfiguredError(
            f"Payment link para plan {plan.value} ({period.value}) no configurado"
        )
    reference = build_reference(tenant_id)
    url = httpx.URL(link).copy_merge_params({"reference": reference, "tenantId": tenant_id})
    return schemas.PaymentLinkOut(url=str(url), reference=reference, plan_type=plan, billing_period=period)
