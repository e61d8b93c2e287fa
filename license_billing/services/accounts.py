"""Local records for users, customers, subscriptions, items and payments."""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from license_billing.models.billing import (
    Customer,
    Payment,
    PurchaseType,
    Subscription,
    SubscriptionItem,
    SubscriptionItemStatus,
    User,
)
from license_billing.services.common import from_timestamp
from license_billing.services.event_context import normalize_site_domain

logger = logging.getLogger(__name__)


def remote_items(remote_subscription: dict[str, Any]) -> list[dict[str, Any]]:
    return list((remote_subscription.get("items") or {}).get("data") or [])


def site_for_remote_item(remote_item: dict[str, Any]) -> str | None:
    """Site domain carried by the item itself or by its per-site cloned price."""
    price = remote_item.get("price")
    price_metadata = (price.get("metadata") if isinstance(price, dict) else None) or {}
    site = (remote_item.get("metadata") or {}).get("site") or price_metadata.get("site")
    return normalize_site_domain(site)


def billing_period_for_price(price: dict[str, Any] | None) -> str | None:
    recurring = (price or {}).get("recurring") or {}
    interval = recurring.get("interval")
    if interval == "year":
        return "yearly"
    if interval == "month":
        return "monthly"
    return None


def _period_bound(remote_subscription: dict[str, Any], key: str) -> Any:
    # Newer API versions only report periods on the items.
    value = remote_subscription.get(key)
    if value:
        return value
    for item in remote_items(remote_subscription):
        if item.get(key):
            return item[key]
    return None


class AccountService:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ── Users & customers ────────────────────────────────

    def get_user(self, email: str) -> User | None:
        return self.db.scalar(select(User).where(User.email == email))

    def get_or_create_user(self, email: str) -> tuple[User, bool]:
        existing = self.get_user(email)
        if existing:
            return existing, False
        user = User(email=email)
        self.db.add(user)
        self.db.flush()
        logger.info("Created user %s", email)
        return user, True

    def link_customer(self, email: str, customer_id: str) -> Customer:
        stmt = select(Customer).where(
            Customer.user_email == email, Customer.customer_id == customer_id
        )
        existing: Customer | None = self.db.scalar(stmt)
        if existing:
            return existing
        customer = Customer(user_email=email, customer_id=customer_id)
        self.db.add(customer)
        self.db.flush()
        return customer

    def latest_customer_id(self, email: str) -> str | None:
        stmt = (
            select(Customer.customer_id)
            .where(Customer.user_email == email)
            .order_by(Customer.created_at.desc())
        )
        return self.db.scalars(stmt).first()

    def email_for_customer(self, customer_id: str) -> str | None:
        stmt = select(Customer.user_email).where(Customer.customer_id == customer_id)
        return self.db.scalars(stmt).first()

    # ── Subscriptions ────────────────────────────────────

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        return self.db.scalar(
            select(Subscription).where(Subscription.subscription_id == subscription_id)
        )

    def current_subscription(
        self, email: str, purchase_type: PurchaseType | None = None
    ) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.user_email == email,
            Subscription.status.in_(("active", "trialing", "past_due")),
        )
        if purchase_type is not None:
            stmt = stmt.where(Subscription.purchase_type == purchase_type)
        return self.db.scalars(stmt.order_by(Subscription.created_at.desc())).first()

    def upsert_subscription(
        self,
        email: str,
        customer_id: str,
        remote: dict[str, Any],
        purchase_type: PurchaseType = PurchaseType.site,
    ) -> Subscription:
        subscription = self.get_subscription(remote["id"])
        if subscription is None:
            subscription = Subscription(
                subscription_id=remote["id"],
                user_email=email,
                customer_id=customer_id,
                purchase_type=purchase_type,
            )
            self.db.add(subscription)
        self.apply_remote_state(subscription, remote)
        self.db.flush()
        return subscription

    def apply_remote_state(self, subscription: Subscription, remote: dict[str, Any]) -> None:
        subscription.status = remote.get("status") or subscription.status or "active"
        subscription.current_period_start = from_timestamp(
            _period_bound(remote, "current_period_start")
        )
        subscription.current_period_end = from_timestamp(
            _period_bound(remote, "current_period_end")
        )
        subscription.cancel_at_period_end = bool(remote.get("cancel_at_period_end"))
        subscription.cancel_at = from_timestamp(remote.get("cancel_at"))
        subscription.canceled_at = from_timestamp(remote.get("canceled_at"))
        for item in remote_items(remote):
            period = billing_period_for_price(item.get("price"))
            if period:
                subscription.billing_period = period
                break

    # ── Items ────────────────────────────────────────────

    def get_item(self, item_id: str) -> SubscriptionItem | None:
        return self.db.scalar(select(SubscriptionItem).where(SubscriptionItem.item_id == item_id))

    def upsert_item(
        self,
        subscription_id: str,
        remote_item: dict[str, Any],
        site_domain: str | None,
    ) -> SubscriptionItem:
        item = self.get_item(remote_item["id"])
        price = remote_item.get("price") or {}
        price_id = price.get("id") if isinstance(price, dict) else price
        if item is None:
            item = SubscriptionItem(
                item_id=remote_item["id"],
                subscription_id=subscription_id,
                site_domain=site_domain,
                price_id=price_id,
                quantity=int(remote_item.get("quantity") or 1),
                status=SubscriptionItemStatus.active,
            )
            self.db.add(item)
        else:
            item.quantity = int(remote_item.get("quantity") or item.quantity or 1)
            if site_domain and not item.site_domain:
                item.site_domain = site_domain
        self.db.flush()
        return item

    # ── Payments ─────────────────────────────────────────

    def record_payment(
        self,
        *,
        customer_id: str,
        email: str,
        amount: int,
        currency: str,
        subscription_id: str | None = None,
        site_domain: str | None = None,
        payment_intent_id: str | None = None,
        invoice_id: str | None = None,
    ) -> Payment:
        payment = Payment(
            customer_id=customer_id,
            subscription_id=subscription_id,
            email=email,
            amount=amount,
            currency=currency,
            status="succeeded",
            site_domain=site_domain,
            payment_intent_id=payment_intent_id,
            invoice_id=invoice_id,
        )
        self.db.add(payment)
        self.db.flush()
        return payment
