"""License listing, activation and quantity purchase routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from license_billing.api.deps import (
    get_db,
    get_stripe_gateway,
    require_caller_email,
)
from license_billing.config import Settings, get_settings
from license_billing.schemas.billing import (
    LicenseActionRequest,
    LicenseListResponse,
    LicenseRead,
    PurchaseQuantityRequest,
    PurchaseQuantityResponse,
)
from license_billing.services.event_context import normalize_site_domain
from license_billing.services.licenses import LicenseService
from license_billing.services.quantity import QuantityService
from license_billing.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)
router = APIRouter(tags=["licenses"])


@router.get("/licenses", response_model=LicenseListResponse)
def list_licenses(
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
) -> LicenseListResponse:
    items = LicenseService(db).list_for_email(email)
    return LicenseListResponse(
        items=[LicenseRead.model_validate(item) for item in items],
        count=len(items),
    )


@router.post("/activate-license", response_model=LicenseRead)
def activate_license(
    payload: LicenseActionRequest,
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    config: Settings = Depends(get_settings),
) -> LicenseRead:
    svc = LicenseService(db, gateway, config)
    used_site = normalize_site_domain(payload.site_domain) if payload.site_domain else None
    try:
        license_ = svc.activate(
            payload.license_key.strip().upper(),
            email,
            used_site_domain=used_site,
            adjust_billing=payload.adjust_billing,
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    db.commit()
    return LicenseRead.model_validate(license_)


@router.post("/deactivate-license", response_model=LicenseRead)
def deactivate_license(
    payload: LicenseActionRequest,
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    config: Settings = Depends(get_settings),
) -> LicenseRead:
    svc = LicenseService(db, gateway, config)
    try:
        license_ = svc.deactivate(
            payload.license_key.strip().upper(),
            email,
            adjust_billing=payload.adjust_billing,
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    db.commit()
    return LicenseRead.model_validate(license_)


@router.post("/purchase-quantity", response_model=PurchaseQuantityResponse)
def purchase_quantity(
    payload: PurchaseQuantityRequest,
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    config: Settings = Depends(get_settings),
) -> PurchaseQuantityResponse:
    """Start a checkout for ``quantity`` license slots."""
    svc = QuantityService(db, gateway, config)
    try:
        purchase = svc.purchase(
            email,
            payload.quantity,
            price_id=payload.price_id,
            billing_period=payload.billing_period,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    db.commit()
    return PurchaseQuantityResponse(
        checkout_url=purchase.checkout_url,
        session_id=purchase.session_id,
        quantity=purchase.quantity,
        subscription_id=purchase.subscription_id,
        deferred_count=purchase.deferred_count,
        amount=purchase.amount,
        proration_source=purchase.proration_source,
    )
