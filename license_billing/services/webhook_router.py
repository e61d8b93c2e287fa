"""Stripe webhook dispatch.

One event is one transaction: the idempotency claim, every handler write and
the event log row commit together, so a failed handler leaves the event
unclaimed and Stripe's redelivery runs it again.
"""

import logging
from typing import Any

from sqlalchemy.orm import Session

from license_billing.config import Settings, settings
from license_billing.metrics import WEBHOOK_EVENTS
from license_billing.models.billing import WebhookEvent, WebhookEventStatus
from license_billing.services.checkout import CheckoutService
from license_billing.services.idempotency import claim_operation
from license_billing.services.invoices import InvoiceService
from license_billing.services.memberstack import MemberstackGateway
from license_billing.services.quantity import QuantityService
from license_billing.services.stripe_gateway import StripeGateway, stripe_gateway
from license_billing.services.subscription_sync import SubscriptionSyncService

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
INVOICE_PAYMENT_SUCCEEDED = ("invoice.payment_succeeded", "invoice.paid")
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _event_refs(obj: dict[str, Any]) -> tuple[str | None, str | None]:
    """Best-effort subscription and customer ids for the event log."""
    subscription = obj.get("subscription")
    if obj.get("object") == "subscription":
        subscription = obj.get("id")
    customer = obj.get("customer")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return subscription, customer


class WebhookService:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway | None = None,
        config: Settings | None = None,
        identity: MemberstackGateway | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway
        self.config = config or settings
        self.identity = identity

    def process_event(self, event: dict[str, Any]) -> dict[str, Any]:
        event_id = event.get("id") or ""
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        log_extra = {"event_id": event_id, "event_type": event_type}

        if not claim_operation(self.db, f"stripe:{event_id}", {"type": event_type}):
            WEBHOOK_EVENTS.labels(event_type, "duplicate").inc()
            logger.info("Duplicate webhook delivery", extra=log_extra)
            return {"status": "ok", "duplicate": True}

        result = self._dispatch(event_type, obj)
        handled = result.get("status") == "ok"
        subscription_id, customer_id = _event_refs(obj)
        self.db.add(
            WebhookEvent(
                provider="stripe",
                event_id=event_id,
                event_type=event_type,
                subscription_id=subscription_id,
                customer_id=customer_id,
                payload=event,
                status=WebhookEventStatus.processed if handled else WebhookEventStatus.ignored,
                error_message=result.get("reason"),
            )
        )
        self.db.flush()
        WEBHOOK_EVENTS.labels(event_type, "processed" if handled else "ignored").inc()
        logger.info("Processed webhook: %s", result.get("status"), extra=log_extra)
        return result

    def _dispatch(self, event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
        if event_type == CHECKOUT_COMPLETED:
            outcome = CheckoutService(
                self.db, self.gateway, self.config, self.identity
            ).handle_checkout_completed(obj)
            body: dict[str, Any] = {"status": outcome.status}
            if outcome.reason:
                body["reason"] = outcome.reason
            if outcome.subscription_id:
                body["subscription_id"] = outcome.subscription_id
            if outcome.report.failures:
                body["failed_operations"] = outcome.report.failures_as_dicts()
            return body
        if event_type == PAYMENT_INTENT_SUCCEEDED:
            return QuantityService(self.db, self.gateway, self.config).handle_payment_succeeded(obj)
        if event_type in INVOICE_PAYMENT_SUCCEEDED:
            return InvoiceService(self.db, self.gateway, self.config).handle_payment_succeeded(obj)
        if event_type == INVOICE_PAYMENT_FAILED:
            return InvoiceService(self.db, self.gateway, self.config).handle_payment_failed(obj)
        if event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
            return SubscriptionSyncService(self.db, self.gateway).handle_subscription_updated(
                obj, deleted=event_type == SUBSCRIPTION_DELETED
            )
        return {"status": "ignored", "reason": f"unhandled_event:{event_type}"}


def record_failed_event(db: Session, event: dict[str, Any], error: str) -> None:
    """Log a failed delivery in its own transaction after the event rolled back."""
    event_type = event.get("type") or ""
    subscription_id, customer_id = _event_refs((event.get("data") or {}).get("object") or {})
    db.add(
        WebhookEvent(
            provider="stripe",
            event_id=event.get("id"),
            event_type=event_type,
            subscription_id=subscription_id,
            customer_id=customer_id,
            payload=event,
            status=WebhookEventStatus.failed,
            error_message=error[:2000],
        )
    )
    db.commit()
    WEBHOOK_EVENTS.labels(event_type, "failed").inc()
