"""Quantity purchases: N license slots paid as one prorated charge.

Slot items are created on the subscription before checkout so the provider
can price the proration. Licenses and the payment row are only written once
``payment_intent.succeeded`` arrives; items from abandoned checkouts are
removed later by the orphaned-item sweep.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from license_billing.config import Settings, settings
from license_billing.metrics import PRORATION_SOURCE
from license_billing.models.billing import PurchaseType, Subscription
from license_billing.services.accounts import AccountService
from license_billing.services.common import chunk_metadata, pace
from license_billing.services.event_context import (
    USECASE_QUANTITY,
    build_quantity_payment_context,
)
from license_billing.services.licenses import LicenseService, generate_unique_license_keys
from license_billing.services.pricing import PricingService, ReferencePrice
from license_billing.services.queue import QueueService
from license_billing.services.stripe_gateway import (
    StripeGateway,
    StripeGatewayError,
    stripe_gateway,
)

logger = logging.getLogger(__name__)


@dataclass
class QuantityPurchase:
    checkout_url: str | None
    session_id: str
    quantity: int
    subscription_id: str | None
    license_keys: list[str] = field(default_factory=list)
    item_ids: list[str] = field(default_factory=list)
    deferred_count: int = 0
    amount: int | None = None
    proration_source: str | None = None


def _is_proration_line(line: dict[str, Any]) -> bool:
    if line.get("proration"):
        return True
    parent = line.get("parent") or {}
    details = parent.get("subscription_item_details") or {}
    return bool(details.get("proration"))


def amount_from_preview(invoice: dict[str, Any]) -> int:
    """Sum the proration lines of a preview invoice, else its amount due."""
    lines = (invoice.get("lines") or {}).get("data") or []
    proration = sum(int(line.get("amount") or 0) for line in lines if _is_proration_line(line))
    if proration > 0:
        return proration
    return int(invoice.get("amount_due") or 0)


class QuantityService:
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
        self.pricing = PricingService(db, self.gateway, self.config)
        self.licenses = LicenseService(db, self.gateway, self.config)

    # ── Purchase ─────────────────────────────────────────

    def purchase(
        self,
        email: str,
        quantity: int,
        *,
        price_id: str | None = None,
        billing_period: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> QuantityPurchase:
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        if quantity > self.config.max_quantity_per_purchase:
            raise ValueError(
                f"Quantity exceeds the maximum of {self.config.max_quantity_per_purchase} per purchase"
            )

        success_url = success_url or f"{self.config.public_base_url}/dashboard?checkout=success"
        cancel_url = cancel_url or f"{self.config.public_base_url}/dashboard?checkout=cancelled"
        customer_id = self.accounts.latest_customer_id(email)
        subscription = self.accounts.current_subscription(email, PurchaseType.quantity)

        reference_price_id = price_id or self._subscription_price_id(subscription)
        reference = self.pricing.reference_price(reference_price_id, billing_period)

        if customer_id is None or subscription is None:
            return self._checkout_new_subscription(
                email, customer_id, quantity, reference, success_url, cancel_url
            )
        return self._checkout_prorated_slots(
            email, customer_id, subscription, quantity, reference, success_url, cancel_url
        )

    def _subscription_price_id(self, subscription: Subscription | None) -> str | None:
        if subscription is None:
            return None
        for item in subscription.items:
            if item.price_id:
                return item.price_id
        return None

    def _slot_base_price_id(self, reference: ReferencePrice) -> str:
        if reference.source_price_id:
            return reference.source_price_id
        return self.pricing.clone_price(
            reference, "License slots", {"purchase_type": PurchaseType.quantity.value}
        )

    def _checkout_prorated_slots(
        self,
        email: str,
        customer_id: str,
        subscription: Subscription,
        quantity: int,
        reference: ReferencePrice,
        success_url: str,
        cancel_url: str,
    ) -> QuantityPurchase:
        keys = generate_unique_license_keys(self.db, quantity)
        if quantity > self.config.queue_batch_threshold:
            immediate = min(self.config.queue_immediate_count, quantity)
        else:
            immediate = quantity

        base_price_id = self._slot_base_price_id(reference)
        item_ids: list[str] = []
        for index, key in enumerate(keys[:immediate]):
            if index:
                pace(self.config)
            metadata = {"license_key": key, "purchase_type": PurchaseType.quantity.value}
            slot_price = self.pricing.clone_price(reference, f"License {key}", metadata)
            item = self.gateway.create_subscription_item(
                subscription.subscription_id,
                slot_price,
                quantity=1,
                metadata=metadata,
                proration_behavior="create_prorations",
            )
            item_ids.append(item["id"])

        amount, source = self.prorated_amount(
            customer_id,
            subscription.subscription_id,
            created=immediate,
            total=quantity,
            unit_amount=reference.unit_amount,
        )

        payment_metadata = {
            "usecase": USECASE_QUANTITY,
            "purchase_type": PurchaseType.quantity.value,
            "subscription_id": subscription.subscription_id,
            "customer_id": customer_id,
            "user_email": email,
            "quantity": str(quantity),
            "price_id": base_price_id,
            **chunk_metadata("license_keys", keys),
            **chunk_metadata("item_ids", item_ids),
        }
        session = self.gateway.create_checkout_session(
            mode="payment",
            customer=customer_id,
            line_items=[
                {
                    "price_data": {
                        "currency": reference.currency,
                        "unit_amount": amount,
                        "product_data": {"name": f"{quantity} license slot(s), prorated"},
                    },
                    "quantity": 1,
                }
            ],
            payment_intent_data={"metadata": payment_metadata},
            success_url=success_url,
            cancel_url=cancel_url,
        )
        logger.info(
            "Quantity checkout %s for %s: %d slots (%d deferred), amount=%d via %s",
            session["id"],
            email,
            quantity,
            quantity - immediate,
            amount,
            source,
        )
        return QuantityPurchase(
            checkout_url=session.get("url"),
            session_id=session["id"],
            quantity=quantity,
            subscription_id=subscription.subscription_id,
            license_keys=keys,
            item_ids=item_ids,
            deferred_count=quantity - immediate,
            amount=amount,
            proration_source=source,
        )

    def _checkout_new_subscription(
        self,
        email: str,
        customer_id: str | None,
        quantity: int,
        reference: ReferencePrice,
        success_url: str,
        cancel_url: str,
    ) -> QuantityPurchase:
        metadata = {
            "usecase": USECASE_QUANTITY,
            "purchase_type": PurchaseType.quantity.value,
            "quantity": str(quantity),
        }
        price_id = self.pricing.clone_price(reference, "License slots", metadata)
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": quantity}],
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_id:
            params["customer"] = customer_id
        else:
            params["customer_email"] = email
        session = self.gateway.create_checkout_session(**params)
        return QuantityPurchase(
            checkout_url=session.get("url"),
            session_id=session["id"],
            quantity=quantity,
            subscription_id=None,
        )

    # ── Proration ────────────────────────────────────────

    def prorated_amount(
        self,
        customer_id: str,
        subscription_id: str,
        *,
        created: int,
        total: int,
        unit_amount: int,
    ) -> tuple[int, str]:
        """Amount due now for ``total`` slots, and which tier produced it.

        Tiers: upcoming-invoice preview, then a preview listing every current
        item (only when the subscription's billing mode rejects the first),
        then ``unit_amount * total``. The last tier can overcharge.
        """
        amount = 0
        source = "estimate"
        try:
            amount = amount_from_preview(
                self.gateway.preview_upcoming_invoice(customer_id, subscription_id)
            )
            source = "upcoming_preview"
        except StripeGatewayError as exc:
            if exc.is_flexible_billing_error:
                amount = self._preview_with_items(customer_id, subscription_id)
                source = "items_preview"
            else:
                logger.warning("Upcoming invoice preview failed: %s", exc.message)

        if amount > 0 and created and created < total:
            per_slot = amount // created
            amount = per_slot * total
        if amount <= 0:
            amount = unit_amount * total
            source = "estimate"
        PRORATION_SOURCE.labels(source).inc()
        return amount, source

    def _preview_with_items(self, customer_id: str, subscription_id: str) -> int:
        try:
            items = [
                {"id": item["id"], "quantity": int(item.get("quantity") or 1)}
                for item in self.gateway.list_subscription_items(subscription_id)
            ]
            return amount_from_preview(
                self.gateway.preview_invoice_with_items(customer_id, subscription_id, items)
            )
        except StripeGatewayError as exc:
            logger.warning("Itemised invoice preview failed: %s", exc.message)
            return 0

    # ── Payment succeeded ────────────────────────────────

    def handle_payment_succeeded(self, intent: dict[str, Any]) -> dict[str, Any]:
        ctx = build_quantity_payment_context(intent)
        if not ctx.is_quantity_purchase:
            return {"status": "ignored", "reason": "not_a_quantity_purchase"}
        if not ctx.license_keys:
            logger.error("Quantity payment %s carries no license keys", ctx.payment_intent_id)
            return {"status": "ignored", "reason": "missing_license_keys"}

        customer_id = ctx.customer_id
        email = ctx.email or (customer_id and self.accounts.email_for_customer(customer_id))
        if not customer_id or not email:
            raise ValueError(f"Payment {ctx.payment_intent_id} has no customer or email")

        self.accounts.get_or_create_user(email)
        self.accounts.link_customer(email, customer_id)
        if ctx.subscription_id and self.accounts.get_subscription(ctx.subscription_id) is None:
            remote = self.gateway.retrieve_subscription(ctx.subscription_id)
            self.accounts.upsert_subscription(email, customer_id, remote, PurchaseType.quantity)

        issued: list[str] = []
        for key, item_id in zip(ctx.license_keys, ctx.item_ids):
            if ctx.subscription_id:
                self.accounts.upsert_item(ctx.subscription_id, {"id": item_id}, None)
            license_ = self.licenses.issue_license(
                customer_id=customer_id,
                subscription_id=ctx.subscription_id,
                item_id=item_id,
                purchase_type=PurchaseType.quantity,
                license_key=key,
            )
            issued.append(license_.license_key)

        self.accounts.record_payment(
            customer_id=customer_id,
            email=email,
            amount=ctx.amount_received,
            currency=ctx.currency,
            subscription_id=ctx.subscription_id,
            payment_intent_id=ctx.payment_intent_id,
        )

        queued = 0
        if len(ctx.item_ids) < len(ctx.license_keys):
            rows = QueueService(self.db, self.gateway, self.config).enqueue_slots(
                customer_id=customer_id,
                user_email=email,
                payment_intent_id=ctx.payment_intent_id,
                price_id=ctx.price_id or "",
                subscription_id=ctx.subscription_id,
                license_keys=ctx.license_keys,
                item_ids=ctx.item_ids,
                amount_received=ctx.amount_received,
                currency=ctx.currency,
            )
            queued = sum(1 for row in rows if row.item_id is None)

        logger.info(
            "Quantity payment %s: %d licenses issued, %d slots queued",
            ctx.payment_intent_id,
            len(issued),
            queued,
        )
        return {
            "status": "ok",
            "licenses_issued": len(issued),
            "queued": queued,
            "subscription_id": ctx.subscription_id,
        }
