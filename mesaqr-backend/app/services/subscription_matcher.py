"""Resolution of a canonical billing event to the internal Subscription it concerns.

Strategies are plain functions ``(event, db) -> Subscription | None`` tried in order;
the first hit wins. Strategies only read. The one write, backfilling the external id
after an amount-based guess, happens in ``resolve_subscription``.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app import models
from app.db import settings
from app.domain.billing.enums import PaymentProvider, PlanType, SubscriptionStatus
from app.domain.billing.errors import UnmatchedEventError
from app.domain.billing.plans import PAID_PLANS, PLAN_PRICES
from app.observability import log_billing_event
from app.services.billing_events import CanonicalEvent

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"^SUB_(?P<tenant_id>[A-Za-z0-9-]+)_(?P<timestamp>\d+)$")

# Subscriptions created before the payment settles; "pending" has no separate state here.
AMOUNT_MATCH_STATUSES = (SubscriptionStatus.incomplete,)
AMOUNT_MATCH_CURRENCY = "COP"

MatchStrategy = Callable[[CanonicalEvent, Session], "models.Subscription | None"]


@dataclass(frozen=True, slots=True)
class MatchResult:
    subscription: models.Subscription
    strategy: str


def parse_reference(reference: str | None) -> str | None:
    """Return the tenant id embedded in a ``SUB_<tenantId>_<timestamp>`` reference."""
    if not reference:
        return None
    match = REFERENCE_PATTERN.match(reference.strip())
    if not match:
        return None
    return match.group("tenant_id")


def infer_plan_from_amount(
    amount_minor_units: int | None,
    currency: str | None,
    tolerance: int,
) -> PlanType | None:
    if amount_minor_units is None or not currency:
        return None
    # Tolerance is expressed in COP; other currencies never reach the heuristic.
    if currency.upper() != AMOUNT_MATCH_CURRENCY:
        return None
    prices = PLAN_PRICES[AMOUNT_MATCH_CURRENCY]
    amount = amount_minor_units / 100
    for plan in PAID_PLANS:
        for (price_plan, _period), price in prices.items():
            if price_plan == plan and abs(amount - price) <= tolerance:
                return plan
    return None


def match_by_external_id(event: CanonicalEvent, db: Session) -> models.Subscription | None:
    provider_filter = or_(
        models.Subscription.external_provider == event.provider,
        models.Subscription.external_provider.is_(None),
    )
    if event.external_transaction_id:
        subscription = (
            db.query(models.Subscription)
            .filter(provider_filter)
            .filter(models.Subscription.external_id == event.external_transaction_id)
            .order_by(models.Subscription.created_at.desc())
            .first()
        )
        if subscription:
            return subscription
    if event.provider == PaymentProvider.stripe and event.external_subject_id:
        return (
            db.query(models.Subscription)
            .filter(models.Subscription.external_customer_id == event.external_subject_id)
            .order_by(models.Subscription.created_at.desc())
            .first()
        )
    return None


def match_by_reference(event: CanonicalEvent, db: Session) -> models.Subscription | None:
    tenant_id = parse_reference(event.reference)
    if not tenant_id:
        return None
    return (
        db.query(models.Subscription)
        .filter(models.Subscription.tenant_id == tenant_id)
        .order_by(models.Subscription.created_at.desc())
        .first()
    )


def match_by_amount(
    event: CanonicalEvent,
    db: Session,
    *,
    tolerance: int | None = None,
) -> models.Subscription | None:
    if tolerance is None:
        tolerance = settings.amount_match_tolerance_cop
    plan = infer_plan_from_amount(event.amount_minor_units, event.currency, tolerance)
    if plan is None:
        return None
    return (
        db.query(models.Subscription)
        .filter(models.Subscription.plan_type == plan)
        .filter(models.Subscription.status.in_(AMOUNT_MATCH_STATUSES))
        .order_by(models.Subscription.created_at.desc())
        .first()
    )


DEFAULT_STRATEGIES: tuple[tuple[str, MatchStrategy], ...] = (
    ("external_id", match_by_external_id),
    ("reference", match_by_reference),
    ("amount", match_by_amount),
)


def find_subscription(
    event: CanonicalEvent,
    db: Session,
    strategies: Sequence[tuple[str, MatchStrategy]] = DEFAULT_STRATEGIES,
) -> MatchResult | None:
    for name, strategy in strategies:
        subscription = strategy(event, db)
        if subscription is not None:
            return MatchResult(subscription=subscription, strategy=name)
    return None


def resolve_subscription(
    event: CanonicalEvent,
    db: Session,
    strategies: Sequence[tuple[str, MatchStrategy]] = DEFAULT_STRATEGIES,
) -> MatchResult:
    result = find_subscription(event, db, strategies)
    if result is None:
        raise UnmatchedEventError(event)

    subscription = result.subscription
    if result.strategy == "amount" and event.external_transaction_id:
        subscription.external_provider = event.provider
        subscription.external_id = event.external_transaction_id
        db.flush()
        log_billing_event(
            logger,
            logging.INFO,
            "subscription_external_id_backfilled",
            provider=event.provider.value,
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            external_id=event.external_transaction_id,
        )

    log_billing_event(
        logger,
        logging.INFO,
        "subscription_matched",
        provider=event.provider.value,
        strategy=result.strategy,
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        external_transaction_id=event.external_transaction_id,
    )
    return result
