from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from license_billing.models.billing import (
    License,
    LicenseStatus,
    Subscription,
    SubscriptionItem,
)
from license_billing.services.accounts import AccountService
from license_billing.services.common import as_utc
from license_billing.services.licenses import LicenseService
from license_billing.services.sites import SiteService


def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def build_dashboard(db: Session, email: str) -> dict[str, Any]:
    """Sites, subscriptions, pending sites and license counts for one account."""
    accounts = AccountService(db)
    user = accounts.get_user(email)
    if user is None:
        raise LookupError("Account not found")

    subscriptions = list(
        db.scalars(
            select(Subscription)
            .where(Subscription.user_email == email)
            .order_by(Subscription.created_at.desc())
        ).all()
    )
    licenses = LicenseService(db).list_for_email(email)
    licenses_by_item: dict[str, License] = {
        license_.item_id: license_ for license_ in licenses if license_.item_id
    }

    sites: list[dict[str, Any]] = []
    summary: list[dict[str, Any]] = []
    for subscription in subscriptions:
        items = list(
            db.scalars(
                select(SubscriptionItem).where(
                    SubscriptionItem.subscription_id == subscription.subscription_id
                )
            ).all()
        )
        for item in items:
            if not item.site_domain:
                continue
            license_ = licenses_by_item.get(item.item_id)
            sites.append(
                {
                    "site_domain": item.site_domain,
                    "status": item.status.value,
                    "subscription_id": subscription.subscription_id,
                    "item_id": item.item_id,
                    "license_key": license_.license_key if license_ else None,
                    "removed_at": _iso(item.removed_at),
                }
            )
        summary.append(
            {
                "subscription_id": subscription.subscription_id,
                "status": subscription.status,
                "purchase_type": subscription.purchase_type.value,
                "billing_period": subscription.billing_period,
                "current_period_end": _iso(subscription.current_period_end),
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "item_count": len(items),
            }
        )

    pending = SiteService(db).list_pending(email)
    return {
        "email": email,
        "sites": sites,
        "subscriptions": summary,
        "pending_sites": [
            {"site_domain": p.site_domain, "billing_period": p.billing_period} for p in pending
        ],
        "license_count": len(licenses),
        "active_license_count": sum(1 for lic in licenses if lic.status == LicenseStatus.active),
    }
