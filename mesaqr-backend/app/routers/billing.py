import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app import models
from app.db import Settings, get_db, get_settings
from app.domain.billing.errors import BillingError, InvalidPlanError, ProviderAPIError
from app.schemas import PaymentLinkOut, SubscriptionCreateIn, SubscriptionOut, SubscriptionUpdateIn
from app.services.billing_notifications import BillingNotifier, get_notifier
from app.services.billing_webhooks import schedule_payment_confirmation
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway
from app.services.subscriptions import (
    build_wompi_payment_link,
    create_subscription,
    get_subscription_for_tenant,
    update_subscription,
)
from app.services.wompi import WompiClient, get_wompi_client

router = APIRouter(prefix="/subscriptions", tags=["billing"])
logger = logging.getLogger(__name__)


def _http_error(exc: BillingError) -> HTTPException:
    if isinstance(exc, ProviderAPIError):
        logger.error(
            "Payment provider failure provider=%s status=%s detail=%s",
            exc.provider,
            exc.upstream_status,
            exc.detail,
        )
        return HTTPException(status_code=exc.status_code, detail=exc.user_message)
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


@router.get("/tenant/{tenant_id}", response_model=Optional[SubscriptionOut])
def get_tenant_subscription(tenant_id: str, db: Session = Depends(get_db)):
    subscription = get_subscription_for_tenant(db, tenant_id)
    if subscription is None:
        return None
    return SubscriptionOut.from_model(subscription)


@router.post("", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
def create_tenant_subscription(
    payload: SubscriptionCreateIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
    wompi_client: WompiClient = Depends(get_wompi_client),
    notifier: BillingNotifier = Depends(get_notifier),
    config: Settings = Depends(get_settings),
):
    try:
        result = create_subscription(
            db,
            payload,
            stripe_gateway=stripe_gateway,
            wompi_client=wompi_client,
            config=config,
        )
    except BillingError as exc:
        db.rollback()
        raise _http_error(exc) from exc

    if result.payment_created and result.payment is not None:
        schedule_payment_confirmation(background_tasks, notifier, result.subscription, result.payment)
    return SubscriptionOut.from_model(result.subscription)


@router.put("/{subscription_id}", response_model=SubscriptionOut)
def update_tenant_subscription(
    subscription_id: str,
    payload: SubscriptionUpdateIn,
    db: Session = Depends(get_db),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
    config: Settings = Depends(get_settings),
):
    try:
        subscription = update_subscription(
            db,
            subscription_id,
            payload,
            stripe_gateway=stripe_gateway,
            config=config,
        )
    except BillingError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    return SubscriptionOut.from_model(subscription)


@router.get("/wompi/payment-link", response_model=PaymentLinkOut)
def get_wompi_payment_link(
    plan: str = Query(...),
    tenant_id: str = Query(..., min_length=1),
    annual: bool = Query(default=False),
    config: Settings = Depends(get_settings),
):
    try:
        try:
            plan_type = models.PlanType(plan.strip().lower())
        except ValueError:
            raise InvalidPlanError("Plan inválido. Debe ser 'pro' o 'premium'")
        return build_wompi_payment_link(plan_type, annual, tenant_id, config=config)
    except BillingError as exc:
        raise _http_error(exc) from exc
