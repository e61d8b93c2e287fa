"""Site staging and adding sites to subscriptions."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from license_billing.config import Settings, settings
from license_billing.models.billing import (
    License,
    LicenseStatus,
    PendingSite,
    PurchaseType,
    Subscription,
    SubscriptionItem,
    SubscriptionItemStatus,
)
from license_billing.services.accounts import AccountService, remote_items
from license_billing.services.common import pace
from license_billing.services.event_context import normalize_site_domain
from license_billing.services.idempotency import claim_operation
from license_billing.services.licenses import LicenseService
from license_billing.services.outcomes import OperationOutcome, OperationReport
from license_billing.services.pricing import PricingService
from license_billing.services.stripe_gateway import (
    StripeGateway,
    StripeGatewayError,
    stripe_gateway,
)

logger = logging.getLogger(__name__)


@dataclass
class AddedSite:
    site_domain: str
    item_id: str
    license_key: str


@dataclass
class AddSitesResult:
    subscription_id: str
    created_new_subscription: bool
    sites: list[AddedSite] = field(default_factory=list)
    report: OperationReport = field(default_factory=OperationReport)


class SiteService:
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

    # ── Pending sites ────────────────────────────────────

    def list_pending(self, email: str) -> list[PendingSite]:
        stmt = (
            select(PendingSite)
            .where(PendingSite.user_email == email)
            .order_by(PendingSite.created_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    def _active_site_item(self, email: str, site: str) -> SubscriptionItem | None:
        stmt = (
            select(SubscriptionItem)
            .join(Subscription, Subscription.subscription_id == SubscriptionItem.subscription_id)
            .where(
                Subscription.user_email == email,
                SubscriptionItem.site_domain == site,
                SubscriptionItem.status == SubscriptionItemStatus.active,
            )
        )
        return self.db.scalars(stmt).first()

    def stage_sites(
        self,
        email: str,
        sites: list[str],
        price_id: str | None = None,
        billing_period: str | None = None,
    ) -> list[PendingSite]:
        domains = [d for d in (normalize_site_domain(s) for s in sites) if d]
        if not domains:
            raise ValueError("At least one site domain is required")
        self.accounts.get_or_create_user(email)

        staged: list[PendingSite] = []
        for domain in dict.fromkeys(domains):
            if self._active_site_item(email, domain) is not None:
                raise ValueError(f"Site {domain} already has an active subscription")
            existing = self.db.scalar(
                select(PendingSite).where(
                    PendingSite.user_email == email, PendingSite.site_domain == domain
                )
            )
            if existing:
                staged.append(existing)
                continue
            pending = PendingSite(
                user_email=email,
                site_domain=domain,
                price_id=price_id,
                billing_period=billing_period,
            )
            self.db.add(pending)
            staged.append(pending)
        self.db.flush()
        logger.info("Staged %d sites for %s", len(staged), email)
        return staged

    def remove_pending_site(self, email: str, site: str) -> None:
        domain = normalize_site_domain(site)
        pending = self.db.scalar(
            select(PendingSite).where(
                PendingSite.user_email == email, PendingSite.site_domain == domain
            )
        )
        if pending is None:
            raise LookupError("Pending site not found")
        self.db.delete(pending)
        self.db.flush()

    # ── Adding sites ─────────────────────────────────────

    def _site_price(self, email: str, pending: PendingSite) -> str:
        price_id = self.pricing.resolve_price_id(email, pending.price_id)
        reference = self.pricing.reference_price(price_id, pending.billing_period)
        metadata = {"site": pending.site_domain, "purchase_type": PurchaseType.site.value}
        return self.pricing.clone_price(reference, f"Site license: {pending.site_domain}", metadata)

    def add_sites_to_subscription(
        self,
        email: str,
        subscription_id: str | None = None,
        sites: list[str] | None = None,
    ) -> AddSitesResult:
        """Attach pending sites to a site subscription, one item per site.

        A quantity subscription never receives site items: in that case, or
        when the caller has no subscription, a new one is created and the
        original is left untouched.
        """
        pending = self.list_pending(email)
        if sites:
            wanted = {normalize_site_domain(s) for s in sites}
            pending = [p for p in pending if p.site_domain in wanted]
        if not pending:
            raise ValueError("No pending sites to add")

        if subscription_id:
            target = self.accounts.get_subscription(subscription_id)
            if target is None or target.user_email != email:
                raise LookupError("Subscription not found")
        else:
            target = self.accounts.current_subscription(email)

        if target is None or target.purchase_type == PurchaseType.quantity:
            return self._create_site_subscription(email, pending)
        return self._append_sites(email, target, pending)

    def _append_sites(
        self, email: str, target: Subscription, pending: list[PendingSite]
    ) -> AddSitesResult:
        result = AddSitesResult(target.subscription_id, created_new_subscription=False)
        for index, site in enumerate(pending):
            if index:
                pace(self.config)
            try:
                price_id = self._site_price(email, site)
                remote_item = self.gateway.create_subscription_item(
                    target.subscription_id,
                    price_id,
                    quantity=1,
                    metadata={"site": site.site_domain, "purchase_type": PurchaseType.site.value},
                    proration_behavior="create_prorations",
                )
            except StripeGatewayError as exc:
                # The pending row stays so the site can be retried.
                outcome = (
                    OperationOutcome.retryable if exc.retryable else OperationOutcome.fatal
                )(f"add_site:{site.site_domain}", exc.message)
                result.report.add(outcome)
                continue
            result.sites.append(self._persist_site(target, remote_item, site))
        self.db.flush()
        logger.info(
            "Added %d sites to %s (%d failed)",
            len(result.sites),
            target.subscription_id,
            len(result.report.failures),
        )
        return result

    def _create_site_subscription(self, email: str, pending: list[PendingSite]) -> AddSitesResult:
        customer_id = self.accounts.latest_customer_id(email)
        if customer_id is None:
            raise ValueError("No billing customer on file; start a checkout instead")

        items: list[dict[str, Any]] = []
        metadata: dict[str, str] = {"purchase_type": PurchaseType.site.value}
        for index, site in enumerate(pending):
            if index:
                pace(self.config)
            items.append(
                {
                    "price": self._site_price(email, site),
                    "quantity": 1,
                    "metadata": {"site": site.site_domain},
                }
            )
            metadata[f"site_{index}"] = site.site_domain

        remote = self.gateway.create_subscription(
            customer_id, items, metadata=metadata, payment_behavior="allow_incomplete"
        )
        subscription = self.accounts.upsert_subscription(
            email, customer_id, remote, PurchaseType.site
        )
        result = AddSitesResult(subscription.subscription_id, created_new_subscription=True)
        by_domain = {p.site_domain: p for p in pending}
        for index, remote_item in enumerate(remote_items(remote)):
            domain = (remote_item.get("metadata") or {}).get("site") or metadata.get(
                f"site_{index}"
            )
            site = by_domain.get(domain)
            if site is None:
                continue
            result.sites.append(self._persist_site(subscription, remote_item, site))
        self.db.flush()
        logger.info(
            "Created subscription %s with %d sites for %s",
            subscription.subscription_id,
            len(result.sites),
            email,
        )
        return result

    def _persist_site(
        self, subscription: Subscription, remote_item: dict[str, Any], site: PendingSite
    ) -> AddedSite:
        item = self.accounts.upsert_item(
            subscription.subscription_id, remote_item, site.site_domain
        )
        license_ = self.licenses.license_for_item(item.item_id) or self.licenses.issue_license(
            customer_id=subscription.customer_id,
            subscription_id=subscription.subscription_id,
            item_id=item.item_id,
            site_domain=site.site_domain,
            purchase_type=PurchaseType.site,
        )
        added = AddedSite(site.site_domain, item.item_id, license_.license_key)
        self.db.delete(site)
        return added

    # ── Checkout for pending sites ───────────────────────

    def create_checkout_from_pending(
        self,
        email: str,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, Any]:
        pending = self.list_pending(email)
        if not pending:
            raise ValueError("No pending sites to check out")

        customer_id = self.accounts.latest_customer_id(email)
        target = self.accounts.current_subscription(email, PurchaseType.site)
        if customer_id and target:
            result = self.add_sites_to_subscription(email, target.subscription_id)
            return {
                "mode": "attached",
                "subscription_id": result.subscription_id,
                "created_new_subscription": result.created_new_subscription,
                "sites": [s.site_domain for s in result.sites],
                "failed": result.report.failures_as_dicts(),
            }

        line_items: list[dict[str, Any]] = []
        sub_metadata: dict[str, str] = {"purchase_type": PurchaseType.site.value}
        for index, site in enumerate(pending):
            if index:
                pace(self.config)
            line_items.append({"price": self._site_price(email, site), "quantity": 1})
            sub_metadata[f"site_{index}"] = site.site_domain

        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": line_items,
            "subscription_data": {"metadata": sub_metadata},
            "success_url": success_url
            or f"{self.config.public_base_url}/dashboard?checkout=success",
            "cancel_url": cancel_url
            or f"{self.config.public_base_url}/dashboard?checkout=cancelled",
        }
        if customer_id:
            params["customer"] = customer_id
        else:
            params["customer_email"] = email
        session = self.gateway.create_checkout_session(**params)
        return {"mode": "checkout", "session_id": session["id"], "url": session.get("url")}

    # ── Removing sites ───────────────────────────────────

    def remove_site(self, email: str, site: str) -> dict[str, Any]:
        domain = normalize_site_domain(site)
        item = self._active_site_item(email, domain) if domain else None
        if item is None:
            raise LookupError("Site not found")
        if not claim_operation(self.db, f"remove-site:{item.item_id}", {"site": domain}):
            return {"status": "already_removed", "site": domain}

        self.gateway.delete_subscription_item(item.item_id, "create_prorations")
        item.status = SubscriptionItemStatus.removed
        item.removed_at = datetime.now(UTC)
        self.db.execute(
            update(License)
            .where(License.item_id == item.item_id)
            .values(status=LicenseStatus.inactive)
        )
        self.db.flush()
        logger.info("Removed site %s (item %s) for %s", domain, item.item_id, email)
        return {"status": "removed", "site": domain, "item_id": item.item_id}
