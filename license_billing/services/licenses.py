"""License keys: generation, issuing, activation."""

import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from license_billing.config import Settings, settings
from license_billing.models.billing import (
    Customer,
    License,
    LicenseStatus,
    PurchaseType,
    SubscriptionItem,
    SubscriptionItemStatus,
    SubscriptionQueueItem,
)
from license_billing.services.stripe_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)

# No I, O, 0 or 1: keys get read aloud and typed by hand.
LICENSE_KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
LICENSE_KEY_PREFIX = "KEY"
LICENSE_KEY_GROUPS = 4
LICENSE_KEY_GROUP_LENGTH = 4
MAX_KEY_ATTEMPTS = 5


def generate_license_key() -> str:
    groups = [
        "".join(secrets.choice(LICENSE_KEY_ALPHABET) for _ in range(LICENSE_KEY_GROUP_LENGTH))
        for _ in range(LICENSE_KEY_GROUPS)
    ]
    return "-".join([LICENSE_KEY_PREFIX, *groups])


def _existing_keys(db: Session, keys: set[str]) -> set[str]:
    if not keys:
        return set()
    issued = db.scalars(select(License.license_key).where(License.license_key.in_(keys)))
    queued = db.scalars(
        select(SubscriptionQueueItem.license_key).where(
            SubscriptionQueueItem.license_key.in_(keys)
        )
    )
    return set(issued.all()) | set(queued.all())


def generate_unique_license_keys(db: Session, count: int) -> list[str]:
    """Generate ``count`` keys unique within the batch and unused in the store."""
    keys: list[str] = []
    seen: set[str] = set()
    for _ in range(MAX_KEY_ATTEMPTS):
        candidates = set()
        while len(candidates) < count - len(keys):
            key = generate_license_key()
            if key not in seen:
                candidates.add(key)
        taken = _existing_keys(db, candidates)
        if taken:
            logger.warning("Discarding %d colliding license keys", len(taken))
        seen |= candidates
        keys.extend(sorted(candidates - taken))
        if len(keys) == count:
            return keys
    raise RuntimeError(f"Failed to generate {count} unique license keys")


def _is_license_key_collision(error: IntegrityError) -> bool:
    message = str(getattr(error, "orig", None) or error).lower()
    return "licenses.license_key" in message or "licenses_pkey" in message


def _persist_with_retry(persist: Callable[[str], None], first_key: str | None) -> str:
    last_collision_error: IntegrityError | None = None
    key = first_key or generate_license_key()
    for attempt in range(1, MAX_KEY_ATTEMPTS + 1):
        try:
            persist(key)
            return key
        except IntegrityError as error:
            if not _is_license_key_collision(error):
                raise
            last_collision_error = error
            logger.warning("License key collision on attempt %d/%d", attempt, MAX_KEY_ATTEMPTS)
            key = generate_license_key()
    raise RuntimeError(
        f"Failed to issue a unique license key after {MAX_KEY_ATTEMPTS} attempts"
    ) from last_collision_error


class LicenseService:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway | None = None,
        config: Settings | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway
        self.config = config or settings

    # ── Issuing ──────────────────────────────────────────

    def issue_license(
        self,
        *,
        customer_id: str,
        subscription_id: str | None,
        item_id: str | None,
        site_domain: str | None = None,
        purchase_type: PurchaseType = PurchaseType.site,
        license_key: str | None = None,
    ) -> License:
        """Persist a license, reusing an already-issued row for the same key."""
        if license_key:
            existing: License | None = self.db.get(License, license_key)
            if existing:
                if item_id and not existing.item_id:
                    existing.item_id = item_id
                return existing

        license_: License | None = None

        def _persist(key: str) -> None:
            nonlocal license_
            candidate = License(
                license_key=key,
                customer_id=customer_id,
                subscription_id=subscription_id,
                item_id=item_id,
                site_domain=site_domain,
                status=LicenseStatus.active,
                purchase_type=purchase_type,
            )
            with self.db.begin_nested():
                self.db.add(candidate)
                self.db.flush()
            license_ = candidate

        key = _persist_with_retry(_persist, license_key)
        if license_ is None:
            raise RuntimeError("Failed to persist license after generating a key")
        logger.info("Issued license %s for item %s", key, item_id)
        return license_

    def license_for_item(self, item_id: str) -> License | None:
        stmt = select(License).where(License.item_id == item_id)
        return self.db.scalar(stmt)

    # ── Queries ──────────────────────────────────────────

    def get(self, license_key: str) -> License | None:
        license_: License | None = self.db.get(License, license_key)
        return license_

    def list_for_email(self, email: str) -> list[License]:
        customer_ids = select(Customer.customer_id).where(Customer.user_email == email)
        stmt = (
            select(License)
            .where(License.customer_id.in_(customer_ids))
            .order_by(License.created_at.desc())
        )
        return list(self.db.scalars(stmt).all())

    def get_owned(self, license_key: str, email: str) -> License:
        license_ = self.get(license_key)
        if not license_:
            raise LookupError("License not found")
        owned = self.db.scalar(
            select(Customer.id).where(
                Customer.user_email == email,
                Customer.customer_id == license_.customer_id,
            )
        )
        if not owned:
            raise LookupError("License not found")
        return license_

    # ── Activation ───────────────────────────────────────

    def activate(
        self,
        license_key: str,
        email: str,
        used_site_domain: str | None = None,
        adjust_billing: bool = False,
    ) -> License:
        license_ = self.get_owned(license_key, email)
        license_.status = LicenseStatus.active
        if used_site_domain:
            license_.used_site_domain = used_site_domain
        self.db.flush()
        if adjust_billing:
            self._sync_item_quantity(license_, activating=True)
        logger.info("Activated license %s", license_key)
        return license_

    def deactivate(self, license_key: str, email: str, adjust_billing: bool = False) -> License:
        license_ = self.get_owned(license_key, email)
        license_.status = LicenseStatus.inactive
        self.db.flush()
        if adjust_billing:
            self._sync_item_quantity(license_, activating=False)
        logger.info("Deactivated license %s", license_key)
        return license_

    def _active_license_count(self, item_id: str) -> int:
        stmt = select(func.count()).select_from(License).where(
            License.item_id == item_id, License.status == LicenseStatus.active
        )
        return int(self.db.scalar(stmt) or 0)

    def _sync_item_quantity(self, license_: License, activating: bool) -> None:
        """Bring the billed quantity of the license's item in line with active licenses."""
        if not license_.item_id:
            return
        item = self.db.scalar(
            select(SubscriptionItem).where(SubscriptionItem.item_id == license_.item_id)
        )
        if item is None:
            return

        if item.status != SubscriptionItemStatus.active:
            if activating and license_.subscription_id and item.price_id:
                self._reprovision_item(license_, item)
            return

        wanted = self._active_license_count(item.item_id)
        if wanted == item.quantity:
            return
        if wanted == 0:
            self.gateway.delete_subscription_item(item.item_id, "create_prorations")
            item.status = SubscriptionItemStatus.removed
            item.removed_at = datetime.now(UTC)
        else:
            self.gateway.modify_subscription_item(
                item.item_id, quantity=wanted, proration_behavior="create_prorations"
            )
            item.quantity = wanted
        self.db.flush()

    def _reprovision_item(self, license_: License, old_item: SubscriptionItem) -> None:
        metadata = {"license_key": license_.license_key, "purchase_type": license_.purchase_type.value}
        if license_.site_domain:
            metadata["site"] = license_.site_domain
        created = self.gateway.create_subscription_item(
            license_.subscription_id,
            old_item.price_id,
            quantity=1,
            metadata=metadata,
            proration_behavior="create_prorations",
        )
        self.db.add(
            SubscriptionItem(
                item_id=created["id"],
                subscription_id=license_.subscription_id,
                site_domain=old_item.site_domain,
                price_id=old_item.price_id,
                quantity=1,
                status=SubscriptionItemStatus.active,
            )
        )
        license_.item_id = created["id"]
        self.db.flush()
        logger.info("Re-provisioned item %s for license %s", created["id"], license_.license_key)
