"""Recurring invoice events."""

import logging
from typing import Any

from sqlalchemy.orm import Session

from license_billing.config import Settings, settings
from license_billing.models.billing import PurchaseType, Subscription, SubscriptionItem
from license_billing.services.accounts import AccountService, remote_items, site_for_remote_item
from license_billing.services.idempotency import claim_operation
from license_billing.services.licenses import LicenseService
from license_billing.services.stripe_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)


def _subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    if subscription:
        return subscription
    # Newer API versions nest it under parent.subscription_details.
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


class InvoiceService:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway | None = None,
        config: Settings | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway
        self.config = config or settings
        self.accounts = AccountService(db)
        self.licenses = LicenseService(db, self.gateway, self.config)

    def _current_items(self, subscription: Subscription) -> list[SubscriptionItem]:
        """Upsert the provider's current items; their sites drive this renewal."""
        remote = self.gateway.retrieve_subscription(subscription.subscription_id)
        items = remote_items(remote)
        if (remote.get("items") or {}).get("has_more"):
            items = self.gateway.list_subscription_items(subscription.subscription_id)
        return [
            self.accounts.upsert_item(
                subscription.subscription_id, remote_item, site_for_remote_item(remote_item)
            )
            for remote_item in items
        ]

    def handle_payment_succeeded(self, invoice: dict[str, Any]) -> dict[str, Any]:
        """Record one payment row per site on a renewal and fill in missing licenses."""
        if invoice.get("billing_reason") == "subscription_create":
            # The checkout completion already recorded the first payment.
            return {"status": "ignored", "reason": "subscription_create"}

        subscription_id = _subscription_id(invoice)
        if not subscription_id:
            return {"status": "ignored", "reason": "no_subscription"}
        # invoice.paid and invoice.payment_succeeded both arrive for one charge.
        if invoice.get("id") and not claim_operation(self.db, f"invoice:{invoice['id']}"):
            return {"status": "ok", "duplicate": True}
        subscription = self.accounts.get_subscription(subscription_id)
        if subscription is None:
            logger.warning("Invoice %s for unknown subscription %s", invoice.get("id"), subscription_id)
            return {"status": "ignored", "reason": "unknown_subscription"}

        items = self._current_items(subscription)
        site_items = [item for item in items if item.site_domain]
        currency = invoice.get("currency") or "usd"
        amount_paid = int(invoice.get("amount_paid") or 0)
        payment_intent = invoice.get("payment_intent")
        payment_intent_id = payment_intent.get("id") if isinstance(payment_intent, dict) else payment_intent

        if site_items:
            share = amount_paid // len(site_items)
            for item in site_items:
                self.accounts.record_payment(
                    customer_id=subscription.customer_id,
                    email=subscription.user_email,
                    amount=share,
                    currency=currency,
                    subscription_id=subscription_id,
                    site_domain=item.site_domain,
                    payment_intent_id=payment_intent_id,
                    invoice_id=invoice.get("id"),
                )
        else:
            self.accounts.record_payment(
                customer_id=subscription.customer_id,
                email=subscription.user_email,
                amount=amount_paid,
                currency=currency,
                subscription_id=subscription_id,
                payment_intent_id=payment_intent_id,
                invoice_id=invoice.get("id"),
            )

        created = 0
        for item in items:
            if subscription.purchase_type == PurchaseType.quantity:
                continue
            if self.licenses.license_for_item(item.item_id) is None:
                self.licenses.issue_license(
                    customer_id=subscription.customer_id,
                    subscription_id=subscription_id,
                    item_id=item.item_id,
                    site_domain=item.site_domain,
                    purchase_type=PurchaseType.site,
                )
                created += 1
        if created:
            logger.warning("Created %d missing licenses for %s", created, subscription_id)
        return {"status": "ok", "payments": max(len(site_items), 1), "licenses_created": created}

    def handle_payment_failed(self, invoice: dict[str, Any]) -> dict[str, Any]:
        subscription_id = _subscription_id(invoice)
        subscription = self.accounts.get_subscription(subscription_id) if subscription_id else None
        logger.warning(
            "Invoice %s payment failed for subscription %s", invoice.get("id"), subscription_id
        )
        if subscription is None:
            return {"status": "ignored", "reason": "unknown_subscription"}
        subscription.status = "past_due"
        self.db.flush()
        return {"status": "ok", "subscription_id": subscription_id}
