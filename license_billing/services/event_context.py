"""Normalise Stripe payloads into typed contexts before any use-case runs.

Each logical value that Stripe may carry in more than one place is resolved
here once, using a fixed priority list:

* ``usecase`` discriminator: session metadata, then the session's inline
  payment intent metadata, then the retrieved payment intent's metadata.
* payer email: ``customer_details.email``, then ``customer_email``, then the
  customer object's email.
* site domain: the first custom field whose key is a known alias.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from license_billing.services.common import join_metadata_chunks
from license_billing.services.stripe_gateway import StripeGateway, StripeGatewayError

logger = logging.getLogger(__name__)

USECASE_QUANTITY = "3"
SITE_FIELD_KEYS = ("enteryourlivedomain", "enteryourlivesiteurl", "enteryourlivesiteur")


def normalize_site_domain(value: str | None) -> str | None:
    if not value:
        return None
    domain = value.strip().lower()
    for scheme in ("https://", "http://"):
        if domain.startswith(scheme):
            domain = domain[len(scheme):]
    domain = domain.rstrip("/")
    return domain or None


def extract_site_domain(custom_fields: list[dict[str, Any]] | None) -> str | None:
    for custom_field in custom_fields or []:
        if str(custom_field.get("key", "")).lower() in SITE_FIELD_KEYS:
            text = custom_field.get("text") or {}
            domain = normalize_site_domain(text.get("value"))
            if domain:
                return domain
    return None


def _metadata(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj.get("metadata") or {}
    return {}


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


@dataclass(frozen=True)
class CheckoutContext:
    session_id: str
    mode: str
    usecase: str | None
    email: str | None
    customer_id: str | None
    subscription_id: str | None
    payment_intent_id: str | None
    site_domain: str | None
    amount_total: int
    currency: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_quantity_purchase(self) -> bool:
        return self.usecase == USECASE_QUANTITY


def build_checkout_context(session: dict[str, Any], gateway: StripeGateway) -> CheckoutContext:
    session_metadata = _metadata(session)
    inline_intent = session.get("payment_intent")
    payment_intent_id = _object_id(inline_intent)

    usecase = session_metadata.get("usecase") or _metadata(inline_intent).get("usecase")
    if not usecase and payment_intent_id and not isinstance(inline_intent, dict):
        try:
            intent = gateway.retrieve_payment_intent(payment_intent_id)
            usecase = _metadata(intent).get("usecase")
        except StripeGatewayError as exc:
            logger.warning(
                "Could not read payment intent %s metadata: %s", payment_intent_id, exc.message
            )

    customer_id = _object_id(session.get("customer"))
    email = (session.get("customer_details") or {}).get("email") or session.get(
        "customer_email"
    )
    if not email and customer_id:
        try:
            email = gateway.retrieve_customer(customer_id).get("email")
        except StripeGatewayError as exc:
            logger.warning("Could not read customer %s: %s", customer_id, exc.message)

    return CheckoutContext(
        session_id=session.get("id", ""),
        mode=session.get("mode") or "",
        usecase=str(usecase) if usecase else None,
        email=email.strip().lower() if email else None,
        customer_id=customer_id,
        subscription_id=_object_id(session.get("subscription")),
        payment_intent_id=payment_intent_id,
        site_domain=extract_site_domain(session.get("custom_fields")),
        amount_total=int(session.get("amount_total") or 0),
        currency=session.get("currency") or "usd",
        metadata=session_metadata,
    )


@dataclass(frozen=True)
class QuantityPaymentContext:
    """Everything a quantity purchase stored on its payment intent."""

    payment_intent_id: str
    customer_id: str | None
    email: str | None
    subscription_id: str | None
    price_id: str | None
    quantity: int
    license_keys: list[str]
    item_ids: list[str]
    amount_received: int
    currency: str
    usecase: str | None

    @property
    def is_quantity_purchase(self) -> bool:
        return self.usecase == USECASE_QUANTITY


def build_quantity_payment_context(intent: dict[str, Any]) -> QuantityPaymentContext:
    metadata = _metadata(intent)
    license_keys = join_metadata_chunks(metadata, "license_keys")
    quantity = int(metadata.get("quantity") or len(license_keys) or 0)
    email = metadata.get("user_email") or intent.get("receipt_email")
    return QuantityPaymentContext(
        payment_intent_id=intent.get("id", ""),
        customer_id=_object_id(intent.get("customer")) or metadata.get("customer_id"),
        email=email.strip().lower() if email else None,
        subscription_id=metadata.get("subscription_id") or None,
        price_id=metadata.get("price_id") or None,
        quantity=quantity,
        license_keys=license_keys,
        item_ids=join_metadata_chunks(metadata, "item_ids"),
        amount_received=int(intent.get("amount_received") or intent.get("amount") or 0),
        currency=intent.get("currency") or "usd",
        usecase=str(metadata["usecase"]) if metadata.get("usecase") else None,
    )
