import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import models
from app.domain.billing.enums import BillingAction, PaymentStatus
from app.domain.billing.models import utcnow
from app.domain.billing.plans import plan_price_minor_units
from app.observability import log_billing_event
from app.services.billing_events import CanonicalEvent

logger = logging.getLogger(__name__)


def find_payment(db: Session, external_payment_id: str) -> models.Payment | None:
    return (
        db.query(models.Payment)
        .filter(models.Payment.external_payment_id == external_payment_id)
        .first()
    )


def record_payment(
    db: Session,
    subscription: models.Subscription,
    event: CanonicalEvent,
) -> tuple[models.Payment | None, bool]:
    """Append a ledger row for a settled payment unless one already exists.

    Returns ``(payment, created)``. Only successful settlements carrying a payment id
    are recorded. The insert runs inside a SAVEPOINT and ``external_payment_id`` is
    unique, so a duplicate that slips past the lookup ends as "already recorded"
    without disturbing the surrounding transaction.
    """
    if event.type != BillingAction.RECORD_PAYMENT_SUCCESS or not event.external_payment_id:
        return None, False

    existing = find_payment(db, event.external_payment_id)
    if existing is not None:
        log_billing_event(
            logger,
            logging.INFO,
            "payment_already_recorded",
            provider=event.provider.value,
            payment_id=existing.id,
            external_payment_id=event.external_payment_id,
            tenant_id=subscription.tenant_id,
        )
        return existing, False

    currency = event.currency or "COP"
    amount = event.amount_minor_units
    if amount is None:
        amount = plan_price_minor_units(subscription.plan_type, subscription.billing_period, currency)

    payment = models.Payment(
        id=str(uuid.uuid4()),
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        amount_minor_units=amount,
        currency=currency,
        provider=event.provider,
        external_payment_id=event.external_payment_id,
        status=PaymentStatus.succeeded,
        paid_at=event.paid_at or utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(payment)
    except IntegrityError:
        log_billing_event(
            logger,
            logging.INFO,
            "payment_duplicate_insert_skipped",
            provider=event.provider.value,
            external_payment_id=event.external_payment_id,
            tenant_id=subscription.tenant_id,
        )
        return find_payment(db, event.external_payment_id), False

    log_billing_event(
        logger,
        logging.INFO,
        "payment_recorded",
        provider=event.provider.value,
        payment_id=payment.id,
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        external_payment_id=event.external_payment_id,
        amount_minor_units=amount,
        currency=currency,
    )
    return payment, True
