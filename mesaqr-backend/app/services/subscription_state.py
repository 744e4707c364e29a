import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app import models
from app.domain.billing.enums import SubscriptionStatus
from app.domain.billing.errors import InvalidTransitionError
from app.domain.billing.models import utcnow
from app.observability import log_billing_event
from app.services.billing_events import CanonicalEvent

logger = logging.getLogger(__name__)

ACTIVE_LIKE = (SubscriptionStatus.active, SubscriptionStatus.trialing)

# Re-applying the current status is allowed; the write still happens.
ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.incomplete: frozenset(
        {
            SubscriptionStatus.incomplete,
            SubscriptionStatus.trialing,
            SubscriptionStatus.active,
            SubscriptionStatus.past_due,
            SubscriptionStatus.cancelled,
        }
    ),
    SubscriptionStatus.trialing: frozenset(
        {
            SubscriptionStatus.trialing,
            SubscriptionStatus.active,
            SubscriptionStatus.past_due,
            SubscriptionStatus.cancelled,
        }
    ),
    SubscriptionStatus.active: frozenset(
        {
            SubscriptionStatus.active,
            SubscriptionStatus.trialing,
            SubscriptionStatus.past_due,
            SubscriptionStatus.cancelled,
        }
    ),
    SubscriptionStatus.past_due: frozenset(
        {
            SubscriptionStatus.past_due,
            SubscriptionStatus.active,
            SubscriptionStatus.trialing,
            SubscriptionStatus.cancelled,
        }
    ),
    SubscriptionStatus.cancelled: frozenset({SubscriptionStatus.cancelled}),
}


@dataclass(frozen=True, slots=True)
class StateChange:
    previous: SubscriptionStatus
    current: SubscriptionStatus

    @property
    def changed(self) -> bool:
        return self.previous != self.current


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def next_status(current: SubscriptionStatus, event: CanonicalEvent) -> SubscriptionStatus:
    """Target status for ``event``; the current status when the event carries none."""
    target = event.target_status
    if target is None:
        return current
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Transition {current.value} -> {target.value} is not allowed")
    return target


def mirror_tenant_state(subscription: models.Subscription) -> None:
    tenant = subscription.tenant
    if tenant is not None:
        tenant.billing_state = subscription.status


def apply_event(
    db: Session,
    subscription: models.Subscription,
    event: CanonicalEvent,
    *,
    auto_commit: bool = True,
) -> StateChange:
    """Set the subscription to the event's target status and mirror it onto the tenant.

    The status is written unconditionally, so replaying an event is harmless. Both rows
    are flushed together; with ``auto_commit`` they share one commit, otherwise the
    caller owns the transaction.
    """
    previous = subscription.status
    try:
        target = next_status(previous, event)
    except InvalidTransitionError:
        log_billing_event(
            logger,
            logging.WARNING,
            "subscription_transition_rejected",
            provider=event.provider.value,
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            current_status=previous.value,
            target_status=event.target_status.value if event.target_status else None,
            external_transaction_id=event.external_transaction_id,
        )
        raise

    subscription.status = target
    if event.period_start is not None:
        subscription.current_period_start = event.period_start
    if event.period_end is not None:
        subscription.current_period_end = event.period_end
    if target == SubscriptionStatus.cancelled and subscription.cancelled_at is None:
        subscription.cancelled_at = utcnow()
    mirror_tenant_state(subscription)

    if auto_commit:
        db.commit()
    else:
        db.flush()

    change = StateChange(previous=previous, current=target)
    log_billing_event(
        logger,
        logging.INFO,
        "subscription_status_applied",
        provider=event.provider.value,
        action=event.type.value,
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        previous_status=previous.value,
        status=target.value,
        changed=change.changed,
    )
    return change
