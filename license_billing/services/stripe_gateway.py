"""Stripe payment gateway integration."""

import logging
from typing import Any

import stripe

from license_billing.config import settings

logger = logging.getLogger(__name__)


class StripeGatewayError(Exception):
    """A Stripe call failed; carries the provider's status and error code."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status

    @property
    def is_flexible_billing_error(self) -> bool:
        """True when a preview call was rejected because of the subscription's billing mode."""
        text = (self.message or "").lower()
        return "billing_mode" in text or "flexible" in text

    @property
    def retryable(self) -> bool:
        return self.http_status is None or self.http_status == 429 or self.http_status >= 500


class InvalidWebhookError(ValueError):
    """The webhook body could not be parsed or its signature did not verify."""


def _to_dict(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    """Thin wrapper around the Stripe SDK returning plain dicts."""

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key if api_key is not None else settings.stripe_secret_key

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _call(self, operation: str, fn, *args: Any, **params: Any) -> Any:
        if not self.is_configured():
            raise RuntimeError("Stripe is not configured")
        try:
            return fn(*args, api_key=self._api_key, **params)
        except stripe.StripeError as exc:
            message = exc.user_message or str(exc)
            logger.error("Stripe %s failed: %s", operation, message)
            raise StripeGatewayError(message, exc.code, exc.http_status) from exc

    # ── Webhook ──────────────────────────────────────────

    @staticmethod
    def construct_event(payload: bytes, signature: str, secret: str) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and parse the event."""
        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhookError("Invalid signature") from exc
        except ValueError as exc:
            raise InvalidWebhookError("Invalid payload") from exc
        return _to_dict(event)

    # ── Customers & subscriptions ────────────────────────

    def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return _to_dict(self._call("retrieve_customer", stripe.Customer.retrieve, customer_id))

    def create_customer(self, email: str, metadata: dict[str, str] | None = None) -> dict[str, Any]:
        customer = self._call(
            "create_customer", stripe.Customer.create, email=email, metadata=metadata or {}
        )
        logger.info("Created Stripe customer %s", customer["id"])
        return _to_dict(customer)

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return _to_dict(
            self._call(
                "retrieve_subscription",
                stripe.Subscription.retrieve,
                subscription_id,
                expand=["items.data.price"],
            )
        )

    def create_subscription(
        self,
        customer_id: str,
        items: list[dict[str, Any]],
        metadata: dict[str, str] | None = None,
        payment_behavior: str = "default_incomplete",
    ) -> dict[str, Any]:
        subscription = self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=items,
            metadata=metadata or {},
            payment_behavior=payment_behavior,
        )
        logger.info("Created Stripe subscription %s", subscription["id"])
        return _to_dict(subscription)

    # ── Subscription items ───────────────────────────────

    def create_subscription_item(
        self,
        subscription_id: str,
        price_id: str,
        quantity: int = 1,
        metadata: dict[str, str] | None = None,
        proration_behavior: str = "create_prorations",
    ) -> dict[str, Any]:
        item = self._call(
            "create_subscription_item",
            stripe.SubscriptionItem.create,
            subscription=subscription_id,
            price=price_id,
            quantity=quantity,
            metadata=metadata or {},
            proration_behavior=proration_behavior,
        )
        return _to_dict(item)

    def modify_subscription_item(self, item_id: str, **params: Any) -> dict[str, Any]:
        return _to_dict(
            self._call("modify_subscription_item", stripe.SubscriptionItem.modify, item_id, **params)
        )

    def delete_subscription_item(
        self, item_id: str, proration_behavior: str = "create_prorations"
    ) -> dict[str, Any]:
        deleted = self._call(
            "delete_subscription_item",
            stripe.SubscriptionItem.delete,
            item_id,
            proration_behavior=proration_behavior,
        )
        logger.info("Deleted Stripe subscription item %s", item_id)
        return _to_dict(deleted)

    def list_subscription_items(self, subscription_id: str) -> list[dict[str, Any]]:
        page = self._call(
            "list_subscription_items",
            stripe.SubscriptionItem.list,
            subscription=subscription_id,
            limit=100,
        )
        return [_to_dict(item) for item in page.auto_paging_iter()]

    # ── Products & prices ────────────────────────────────

    def retrieve_price(self, price_id: str) -> dict[str, Any]:
        return _to_dict(self._call("retrieve_price", stripe.Price.retrieve, price_id))

    def create_product(self, name: str, metadata: dict[str, str] | None = None) -> dict[str, Any]:
        return _to_dict(
            self._call("create_product", stripe.Product.create, name=name, metadata=metadata or {})
        )

    def create_price(
        self,
        product_id: str,
        unit_amount: int,
        currency: str,
        recurring: dict[str, Any] | None = None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency,
            "metadata": metadata or {},
        }
        if recurring:
            params["recurring"] = recurring
        return _to_dict(self._call("create_price", stripe.Price.create, **params))

    # ── Checkout ─────────────────────────────────────────

    def create_checkout_session(self, **params: Any) -> dict[str, Any]:
        session = self._call("create_checkout_session", stripe.checkout.Session.create, **params)
        logger.info("Created checkout session %s (mode=%s)", session["id"], params.get("mode"))
        return _to_dict(session)

    # ── Payments, invoices & refunds ─────────────────────

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        return _to_dict(
            self._call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id)
        )

    def preview_upcoming_invoice(self, customer_id: str, subscription_id: str) -> dict[str, Any]:
        return _to_dict(
            self._call(
                "preview_upcoming_invoice",
                stripe.Invoice.create_preview,
                customer=customer_id,
                subscription=subscription_id,
            )
        )

    def preview_invoice_with_items(
        self,
        customer_id: str,
        subscription_id: str,
        items: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Preview an invoice listing every current subscription item explicitly."""
        return _to_dict(
            self._call(
                "preview_invoice_with_items",
                stripe.Invoice.create_preview,
                customer=customer_id,
                subscription=subscription_id,
                subscription_details={
                    "items": items,
                    "proration_behavior": "create_prorations",
                },
            )
        )

    def create_refund(
        self,
        payment_intent_id: str,
        amount: int,
        reason: str = "requested_by_customer",
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        refund = self._call(
            "create_refund",
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            amount=amount,
            reason=reason,
            metadata=metadata or {},
        )
        logger.info("Created refund %s for %s", refund["id"], payment_intent_id)
        return _to_dict(refund)


stripe_gateway = StripeGateway()
