"""
Asynchronous reconciliation path: a verified, normalized provider event is matched to a
subscription, applied through the state machine and recorded in the ledger, all in one
database transaction.
"""
import logging
from dataclasses import dataclass

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from app import models
from app.domain.billing.enums import BillingAction
from app.domain.billing.errors import InvalidTransitionError, UnmatchedEventError
from app.observability import log_billing_event
from app.services.billing_events import CanonicalEvent
from app.services.billing_notifications import BillingNotifier, PaymentConfirmation
from app.services.payment_ledger import record_payment
from app.services.subscription_matcher import resolve_subscription
from app.services.subscription_state import apply_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WebhookOutcome:
    result: str
    action: BillingAction
    subscription_id: str | None = None
    payment_id: str | None = None
    payment_created: bool = False


def schedule_payment_confirmation(
    background_tasks: BackgroundTasks,
    notifier: BillingNotifier,
    subscription: models.Subscription,
    payment: models.Payment,
) -> None:
    tenant = subscription.tenant
    if tenant is None:
        return
    confirmation = PaymentConfirmation.from_payment(tenant, subscription, payment)
    if confirmation is None:
        logger.info("Payment confirmation skipped: tenant=%s has no contact email", tenant.id)
        return
    background_tasks.add_task(notifier.send_payment_confirmation, confirmation)


def process_event(
    db: Session,
    event: CanonicalEvent,
    *,
    notifier: BillingNotifier,
    background_tasks: BackgroundTasks,
) -> WebhookOutcome:
    log_billing_event(logger, logging.INFO, "webhook_event_received", **event.log_context())

    if event.is_ignored:
        log_billing_event(
            logger,
            logging.INFO,
            "webhook_event_ignored",
            provider=event.provider.value,
            event_type=event.event_type,
            raw_status=event.raw_status,
        )
        return WebhookOutcome(result="ignored", action=event.type)

    try:
        match = resolve_subscription(event, db)
    except UnmatchedEventError as exc:
        log_billing_event(logger, logging.WARNING, "webhook_event_unmatched", **exc.event.log_context())
        background_tasks.add_task(notifier.alert_unmatched_event, exc.event)
        return WebhookOutcome(result="unmatched", action=event.type)

    subscription = match.subscription
    result = "applied"
    try:
        apply_event(db, subscription, event, auto_commit=False)
    except InvalidTransitionError:
        result = "transition_rejected"

    # A settled charge is money received even when the status write was refused.
    payment, created = record_payment(db, subscription, event)
    db.commit()

    if created and payment is not None:
        schedule_payment_confirmation(background_tasks, notifier, subscription, payment)

    return WebhookOutcome(
        result=result,
        action=event.type,
        subscription_id=subscription.id,
        payment_id=payment.id if payment is not None else None,
        payment_created=created,
    )
