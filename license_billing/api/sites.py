"""Site staging, checkout and removal routes for the dashboard."""

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
    AddSitesRequest,
    CheckoutFromPendingRequest,
    PendingSiteRead,
    PendingSitesResponse,
    SiteRequest,
)
from license_billing.services.sites import SiteService
from license_billing.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)
router = APIRouter(tags=["sites"])


def _pending_response(svc: SiteService, email: str) -> PendingSitesResponse:
    return PendingSitesResponse(
        pending_sites=[PendingSiteRead.model_validate(p) for p in svc.list_pending(email)]
    )


@router.get("/pending-sites", response_model=PendingSitesResponse)
def list_pending_sites(
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
) -> PendingSitesResponse:
    return _pending_response(SiteService(db), email)


@router.post("/add-sites-batch", response_model=PendingSitesResponse)
def add_sites_batch(
    payload: AddSitesRequest,
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
) -> PendingSitesResponse:
    """Stage site domains as pending until they are paid for."""
    svc = SiteService(db)
    try:
        svc.stage_sites(email, payload.sites, payload.price_id, payload.billing_period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    db.commit()
    return _pending_response(svc, email)


@router.post("/create-checkout-from-pending")
def create_checkout_from_pending(
    payload: CheckoutFromPendingRequest | None = None,
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    config: Settings = Depends(get_settings),
) -> dict:
    payload = payload or CheckoutFromPendingRequest()
    svc = SiteService(db, gateway, config)
    try:
        result = svc.create_checkout_from_pending(
            email, success_url=payload.success_url, cancel_url=payload.cancel_url
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    db.commit()
    return result


@router.post("/remove-site")
def remove_site(
    payload: SiteRequest,
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    config: Settings = Depends(get_settings),
) -> dict:
    svc = SiteService(db, gateway, config)
    try:
        result = svc.remove_site(email, payload.site)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    db.commit()
    return result


@router.post("/remove-pending-site", response_model=PendingSitesResponse)
def remove_pending_site(
    payload: SiteRequest,
    db: Session = Depends(get_db),
    email: str = Depends(require_caller_email),
) -> PendingSitesResponse:
    svc = SiteService(db)
    try:
        svc.remove_pending_site(email, payload.site)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    db.commit()
    return _pending_response(svc, email)
