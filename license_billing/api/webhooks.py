"""Stripe and Memberstack webhook routes."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.responses import JSONResponse

from license_billing.api.deps import get_db, get_memberstack_gateway, get_stripe_gateway
from license_billing.config import Settings, get_settings
from license_billing.services.memberstack import (
    MemberstackGateway,
    handle_member_event,
    verify_webhook_signature,
)
from license_billing.services.stripe_gateway import InvalidWebhookError, StripeGateway
from license_billing.services.webhook_router import WebhookService, record_failed_event

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/webhook", response_model=None)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    identity: MemberstackGateway = Depends(get_memberstack_gateway),
    config: Settings = Depends(get_settings),
) -> dict | JSONResponse:
    """Handle a Stripe event; no auth, the signature is verified instead."""
    if not config.stripe_webhook_secret:
        raise HTTPException(status_code=503, detail="Webhook secret not configured")

    body = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        event = gateway.construct_event(body, signature, config.stripe_webhook_secret)
    except InvalidWebhookError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    svc = WebhookService(db, gateway, config, identity)
    try:
        result = svc.process_event(event)
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception(
            "Webhook processing failed",
            extra={"event_id": event.get("id"), "event_type": event.get("type")},
        )
        record_failed_event(db, event, str(exc))
        # Non-2xx makes Stripe redeliver; the rolled-back claim lets the retry run.
        return JSONResponse(
            status_code=500,
            content={"status": "error", "event_id": event.get("id"), "message": str(exc)},
        )
    return result


@router.post("/memberstack-webhook")
async def memberstack_webhook(
    request: Request,
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict:
    body = await request.body()
    if config.memberstack_webhook_secret:
        signature = request.headers.get("x-memberstack-signature", "")
        if not verify_webhook_signature(body, signature, config.memberstack_webhook_secret):
            raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    result = handle_member_event(db, payload)
    db.commit()
    return result
