import hmac

from fastapi import Depends, Header, HTTPException, Request

from license_billing.config import Settings, get_settings
from license_billing.db import SessionLocal
from license_billing.observability import email_from_token, extract_bearer_token
from license_billing.services.memberstack import MemberstackGateway, memberstack_gateway
from license_billing.services.stripe_gateway import StripeGateway, stripe_gateway


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_caller_email(request: Request) -> str:
    """Email claim of the bearer JWT; every dashboard call requires it."""
    email = email_from_token(extract_bearer_token(request))
    if not email:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return email.strip().lower()


def require_admin_token(
    x_admin_token: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
) -> None:
    if not config.admin_api_token:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, config.admin_api_token):
        raise HTTPException(status_code=403, detail="Forbidden")


def get_stripe_gateway() -> StripeGateway:
    return stripe_gateway


def get_memberstack_gateway() -> MemberstackGateway:
    return memberstack_gateway
