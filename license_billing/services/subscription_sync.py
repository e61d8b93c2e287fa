import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from license_billing.models.billing import (
    License,
    LicenseStatus,
    SubscriptionItem,
    SubscriptionItemStatus,
)
from license_billing.services.accounts import AccountService, remote_items, site_for_remote_item
from license_billing.services.stripe_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)


class SubscriptionSyncService:
    """Mirror the provider's subscription state onto local rows."""

    def __init__(self, db: Session, gateway: StripeGateway | None = None) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway
        self.accounts = AccountService(db)

    def _deactivate_items(self, items: list[SubscriptionItem]) -> None:
        now = datetime.now(UTC)
        for item in items:
            item.status = SubscriptionItemStatus.inactive
            item.removed_at = now
        item_ids = [item.item_id for item in items]
        if item_ids:
            self.db.execute(
                update(License)
                .where(License.item_id.in_(item_ids))
                .values(status=LicenseStatus.inactive)
            )

    def _reactivate_items(self, items: list[SubscriptionItem]) -> None:
        for item in items:
            item.status = SubscriptionItemStatus.active
            item.removed_at = None
        item_ids = [item.item_id for item in items]
        if item_ids:
            self.db.execute(
                update(License)
                .where(License.item_id.in_(item_ids), License.status == LicenseStatus.inactive)
                .values(status=LicenseStatus.active)
            )

    def handle_subscription_updated(
        self, remote: dict[str, Any], deleted: bool = False
    ) -> dict[str, Any]:
        subscription = self.accounts.get_subscription(remote["id"])
        if subscription is None:
            logger.info("Ignoring update for unknown subscription %s", remote["id"])
            return {"status": "ignored", "reason": "unknown_subscription"}

        self.accounts.apply_remote_state(subscription, remote)
        if deleted:
            subscription.status = "canceled"

        local_items = list(
            self.db.scalars(
                select(SubscriptionItem).where(
                    SubscriptionItem.subscription_id == subscription.subscription_id
                )
            ).all()
        )
        active_items = [item for item in local_items if item.status == SubscriptionItemStatus.active]
        if deleted:
            self._deactivate_items(active_items)
            self.db.flush()
            logger.info(
                "Subscription %s deleted, %d items deactivated",
                subscription.subscription_id,
                len(active_items),
            )
            return {
                "status": "ok",
                "subscription_id": subscription.subscription_id,
                "items_deactivated": len(active_items),
                "items_added": 0,
                "items_reactivated": 0,
            }

        items = remote_items(remote)
        if "items" not in remote or (remote.get("items") or {}).get("has_more"):
            items = self.gateway.list_subscription_items(subscription.subscription_id)
        remote_by_id = {item["id"]: item for item in items}
        local_by_id = {item.item_id: item for item in local_items}

        gone = [item for item in active_items if item.item_id not in remote_by_id]
        revived = []
        added = 0
        for item_id, remote_item in remote_by_id.items():
            local = local_by_id.get(item_id)
            if local is None:
                site = site_for_remote_item(remote_item)
                if site is None:
                    continue
                self.accounts.upsert_item(subscription.subscription_id, remote_item, site)
                added += 1
                continue
            if remote_item.get("quantity"):
                local.quantity = int(remote_item["quantity"])
            if local.status != SubscriptionItemStatus.active:
                revived.append(local)
        self._deactivate_items(gone)
        self._reactivate_items(revived)
        self.db.flush()

        logger.info(
            "Synced subscription %s: status=%s, %d deactivated, %d added, %d reactivated",
            subscription.subscription_id,
            subscription.status,
            len(gone),
            added,
            len(revived),
        )
        return {
            "status": "ok",
            "subscription_id": subscription.subscription_id,
            "items_deactivated": len(gone),
            "items_added": added,
            "items_reactivated": len(revived),
        }
