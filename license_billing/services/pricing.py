"""Reference price resolution and per-line price cloning.

Stripe needs a distinct price for every differently labelled line item, so
each site or quantity slot gets its own product and price cloned from a
reference price.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from license_billing.config import Settings, settings
from license_billing.models.billing import (
    PurchaseType,
    Subscription,
    SubscriptionItem,
    SubscriptionItemStatus,
    User,
)
from license_billing.services.stripe_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)

_INTERVALS = {"monthly": "month", "yearly": "year"}


@dataclass(frozen=True)
class ReferencePrice:
    unit_amount: int
    currency: str
    interval: str
    source_price_id: str | None = None

    @property
    def billing_period(self) -> str:
        return "yearly" if self.interval == "year" else "monthly"


class PricingService:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway | None = None,
        config: Settings | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway
        self.config = config or settings

    def account_default_price_id(self, email: str) -> str | None:
        user = self.db.scalar(select(User).where(User.email == email))
        if user and user.default_price_id:
            return user.default_price_id
        stmt = (
            select(SubscriptionItem.price_id)
            .join(
                Subscription,
                Subscription.subscription_id == SubscriptionItem.subscription_id,
            )
            .where(
                Subscription.user_email == email,
                Subscription.purchase_type == PurchaseType.site,
                SubscriptionItem.status == SubscriptionItemStatus.active,
                SubscriptionItem.price_id.is_not(None),
            )
            .order_by(SubscriptionItem.created_at.asc())
        )
        return self.db.scalars(stmt).first()

    def resolve_price_id(self, email: str, site_price_id: str | None = None) -> str | None:
        """Site price, then account default, then the global default."""
        return (
            site_price_id
            or self.account_default_price_id(email)
            or self.config.default_price_id
            or None
        )

    def reference_price(
        self, price_id: str | None, billing_period: str | None = None
    ) -> ReferencePrice:
        if price_id:
            price = self.gateway.retrieve_price(price_id)
            recurring = price.get("recurring") or {}
            return ReferencePrice(
                unit_amount=int(price.get("unit_amount") or 0),
                currency=price.get("currency") or "usd",
                interval=recurring.get("interval") or "month",
                source_price_id=price_id,
            )
        period = billing_period or "monthly"
        _, unit_amount, currency = self.config.billing_period_price(period)
        if unit_amount <= 0:
            raise ValueError(f"No price configured for billing period '{period}'")
        return ReferencePrice(
            unit_amount=unit_amount,
            currency=currency,
            interval=_INTERVALS.get(period, "month"),
        )

    def clone_price(
        self,
        reference: ReferencePrice,
        label: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Create a product named ``label`` with a price copied from ``reference``."""
        product = self.gateway.create_product(label, metadata=metadata)
        price = self.gateway.create_price(
            product["id"],
            reference.unit_amount,
            reference.currency,
            recurring={"interval": reference.interval},
            metadata=metadata,
        )
        logger.info("Cloned price %s for %s", price["id"], label)
        return price["id"]

