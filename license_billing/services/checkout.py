"""Checkout completion: new site subscriptions and new quantity subscriptions."""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from license_billing.config import Settings, settings
from license_billing.models.billing import License, PendingSite, PurchaseType
from license_billing.services.accounts import AccountService, remote_items, site_for_remote_item
from license_billing.services.event_context import (
    CheckoutContext,
    build_checkout_context,
    normalize_site_domain,
)
from license_billing.services.licenses import LicenseService, generate_unique_license_keys
from license_billing.services.memberstack import (
    MemberstackGateway,
    ensure_member,
    memberstack_gateway,
)
from license_billing.services.outcomes import OperationReport
from license_billing.services.stripe_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    status: str
    reason: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    license_keys: list[str] = field(default_factory=list)
    new_user: bool = False
    report: OperationReport = field(default_factory=OperationReport)


class CheckoutService:
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
        self.identity = identity or memberstack_gateway
        self.accounts = AccountService(db)
        self.licenses = LicenseService(db, self.gateway, self.config)

    def handle_checkout_completed(self, session: dict[str, Any]) -> CheckoutResult:
        ctx = build_checkout_context(session, self.gateway)

        if ctx.mode == "payment":
            if ctx.is_quantity_purchase:
                # The payment_intent.succeeded event carries the whole purchase.
                return CheckoutResult(status="ok", reason="handled_by_payment_intent")
            logger.info("Ignoring payment-mode checkout %s without a use case", ctx.session_id)
            return CheckoutResult(status="ignored", reason="unrecognised_payment_checkout")

        if ctx.mode != "subscription":
            return CheckoutResult(status="ignored", reason=f"unsupported_mode:{ctx.mode}")
        if not ctx.subscription_id:
            logger.warning("Checkout %s completed without a subscription", ctx.session_id)
            return CheckoutResult(status="ignored", reason="missing_subscription")
        if not ctx.email:
            logger.error("Checkout %s has no resolvable payer email", ctx.session_id)
            return CheckoutResult(status="ignored", reason="missing_email")

        if ctx.is_quantity_purchase:
            return self.complete_quantity_subscription(ctx)
        return self.complete_site_subscription(ctx)

    # ── New site subscription ────────────────────────────

    def complete_site_subscription(self, ctx: CheckoutContext) -> CheckoutResult:
        remote = self.gateway.retrieve_subscription(ctx.subscription_id)
        customer_id = ctx.customer_id or remote.get("customer")
        email = ctx.email

        user, is_new = self.accounts.get_or_create_user(email)
        self.accounts.link_customer(email, customer_id)
        subscription = self.accounts.upsert_subscription(
            email, customer_id, remote, PurchaseType.site
        )

        sub_metadata = remote.get("metadata") or {}
        issued: list[str] = []
        sites: list[str] = []
        for index, remote_item in enumerate(remote_items(remote)):
            # Returned item order is not guaranteed to follow checkout order.
            site = site_for_remote_item(remote_item) or normalize_site_domain(
                sub_metadata.get(f"site_{index}")
            )
            if site is None and index == 0:
                site = ctx.site_domain
            item = self.accounts.upsert_item(subscription.subscription_id, remote_item, site)
            if site:
                sites.append(site)
            if user.default_price_id is None and item.price_id:
                user.default_price_id = item.price_id
            if self.licenses.license_for_item(item.item_id) is None:
                license_ = self.licenses.issue_license(
                    customer_id=customer_id,
                    subscription_id=subscription.subscription_id,
                    item_id=item.item_id,
                    site_domain=site,
                    purchase_type=PurchaseType.site,
                )
                issued.append(license_.license_key)

        self.accounts.record_payment(
            customer_id=customer_id,
            email=email,
            amount=ctx.amount_total,
            currency=ctx.currency,
            subscription_id=subscription.subscription_id,
            site_domain=sites[0] if sites else ctx.site_domain,
            payment_intent_id=ctx.payment_intent_id,
        )
        if sites:
            self.db.execute(
                delete(PendingSite).where(
                    PendingSite.user_email == email, PendingSite.site_domain.in_(sites)
                )
            )
        self.db.flush()
        logger.info(
            "Subscription %s recorded for %s member %s (%d licenses)",
            subscription.subscription_id,
            "new" if is_new else "returning",
            email,
            len(issued),
        )

        report = ensure_member(email, self.identity, self.config)
        return CheckoutResult(
            status="ok",
            subscription_id=subscription.subscription_id,
            customer_id=customer_id,
            license_keys=issued,
            new_user=is_new,
            report=report,
        )

    # ── New quantity subscription ────────────────────────

    def complete_quantity_subscription(self, ctx: CheckoutContext) -> CheckoutResult:
        remote = self.gateway.retrieve_subscription(ctx.subscription_id)
        customer_id = ctx.customer_id or remote.get("customer")
        email = ctx.email

        _, is_new = self.accounts.get_or_create_user(email)
        self.accounts.link_customer(email, customer_id)
        subscription = self.accounts.upsert_subscription(
            email, customer_id, remote, PurchaseType.quantity
        )

        issued: list[str] = []
        for remote_item in remote_items(remote):
            item = self.accounts.upsert_item(subscription.subscription_id, remote_item, None)
            already = self.db.scalar(
                select(func.count()).select_from(License).where(License.item_id == item.item_id)
            ) or 0
            missing = max(item.quantity - int(already), 0)
            for key in generate_unique_license_keys(self.db, missing) if missing else []:
                self.licenses.issue_license(
                    customer_id=customer_id,
                    subscription_id=subscription.subscription_id,
                    item_id=item.item_id,
                    purchase_type=PurchaseType.quantity,
                    license_key=key,
                )
                issued.append(key)

        self.accounts.record_payment(
            customer_id=customer_id,
            email=email,
            amount=ctx.amount_total,
            currency=ctx.currency,
            subscription_id=subscription.subscription_id,
            payment_intent_id=ctx.payment_intent_id,
        )
        logger.info(
            "Quantity subscription %s recorded for %s (%d licenses)",
            subscription.subscription_id,
            email,
            len(issued),
        )

        report = ensure_member(email, self.identity, self.config)
        return CheckoutResult(
            status="ok",
            subscription_id=subscription.subscription_id,
            customer_id=customer_id,
            license_keys=issued,
            new_user=is_new,
            report=report,
        )
