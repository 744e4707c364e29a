import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.db import Settings, get_db, get_settings
from app.domain.billing.errors import VerificationError
from app.schemas import WebhookAck
from app.services.billing_events import CanonicalEvent, normalize_stripe_event, normalize_wompi_event
from app.services.billing_notifications import BillingNotifier, get_notifier
from app.services.billing_webhooks import process_event
from app.services.webhook_verifier import verify_hmac_signature, verify_stripe_event

router = APIRouter(prefix="/webhooks", tags=["billing-webhook"])
logger = logging.getLogger(__name__)


def _process(
    db: Session,
    event: CanonicalEvent,
    notifier: BillingNotifier,
    background_tasks: BackgroundTasks,
):
    try:
        process_event(db, event, notifier=notifier, background_tasks=background_tasks)
    except Exception as exc:
        # Non-200 makes the provider redeliver later.
        db.rollback()
        logger.exception(
            "Webhook processing failed provider=%s type=%s transaction=%s",
            event.provider.value,
            event.event_type,
            event.external_transaction_id,
        )
        return JSONResponse(status_code=500, content={"error": str(exc) or type(exc).__name__})
    return WebhookAck()


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier: BillingNotifier = Depends(get_notifier),
    config: Settings = Depends(get_settings),
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    raw_body = await request.body()
    try:
        payload = verify_stripe_event(
            raw_body,
            stripe_signature,
            config.stripe_webhook_secret,
            tolerance=config.stripe_webhook_tolerance_seconds,
        )
    except VerificationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    return _process(db, normalize_stripe_event(payload), notifier, background_tasks)


@router.post("/wompi", response_model=WebhookAck)
async def wompi_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier: BillingNotifier = Depends(get_notifier),
    config: Settings = Depends(get_settings),
    signature: str | None = Header(default=None),
    x_signature: str | None = Header(default=None, alias="X-Signature"),
):
    raw_body = await request.body()
    try:
        verify_hmac_signature(
            raw_body,
            signature or x_signature,
            config.wompi_events_secret,
            production=config.is_production,
            provider="wompi",
        )
    except VerificationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return _process(db, normalize_wompi_event(payload), notifier, background_tasks)
