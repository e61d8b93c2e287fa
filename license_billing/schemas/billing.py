from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from license_billing.models.billing import LicenseStatus, PurchaseType

BillingPeriod = Literal["monthly", "yearly"]

# ── Sites ────────────────────────────────────────────────


class AddSitesRequest(BaseModel):
    sites: list[str] = Field(min_length=1, max_length=50)
    price_id: str | None = None
    billing_period: BillingPeriod | None = None


class PendingSiteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    site_domain: str
    price_id: str | None = None
    billing_period: str | None = None
    created_at: datetime | None = None


class PendingSitesResponse(BaseModel):
    pending_sites: list[PendingSiteRead]


class CheckoutFromPendingRequest(BaseModel):
    success_url: str | None = None
    cancel_url: str | None = None


class SiteRequest(BaseModel):
    site: str = Field(min_length=1, max_length=255)


# ── Quantity purchases ───────────────────────────────────


class PurchaseQuantityRequest(BaseModel):
    quantity: int = Field(ge=1)
    price_id: str | None = None
    billing_period: BillingPeriod | None = None
    success_url: str | None = None
    cancel_url: str | None = None


class PurchaseQuantityResponse(BaseModel):
    checkout_url: str | None
    session_id: str
    quantity: int
    subscription_id: str | None = None
    deferred_count: int = 0
    amount: int | None = None
    proration_source: str | None = None


# ── Licenses ─────────────────────────────────────────────


class LicenseRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    license_key: str
    subscription_id: str | None = None
    item_id: str | None = None
    site_domain: str | None = None
    used_site_domain: str | None = None
    status: LicenseStatus
    purchase_type: PurchaseType
    created_at: datetime | None = None


class LicenseListResponse(BaseModel):
    items: list[LicenseRead]
    count: int


class LicenseActionRequest(BaseModel):
    license_key: str = Field(min_length=1, max_length=64)
    site_domain: str | None = Field(default=None, max_length=255)
    adjust_billing: bool = False


# ── Queue ────────────────────────────────────────────────


class ProcessQueueRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=100)


class ProcessQueueResponse(BaseModel):
    processed: int
    successCount: int  # noqa: N815
    failCount: int  # noqa: N815
