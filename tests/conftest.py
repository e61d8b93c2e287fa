import itertools
import os
import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt

# Environment must be in place before the settings dataclass is imported.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_CALL_DELAY_MS"] = "0"
os.environ["ADMIN_API_TOKEN"] = "admin-token"
os.environ["MEMBERSTACK_SECRET_KEY"] = ""
os.environ["MEMBERSTACK_WEBHOOK_SECRET"] = ""
os.environ["MONTHLY_UNIT_AMOUNT"] = "1000"
os.environ["YEARLY_UNIT_AMOUNT"] = "10000"
os.environ["DEFAULT_PRICE_ID"] = ""

from license_billing import models  # noqa: E402,F401
from license_billing.config import settings  # noqa: E402
from license_billing.db import Base, engine  # noqa: E402
from license_billing.models import (  # noqa: E402
    Customer,
    License,
    LicenseStatus,
    PurchaseType,
    Subscription,
    SubscriptionItem,
    SubscriptionItemStatus,
    User,
)
from license_billing.services.memberstack import MemberstackGateway  # noqa: E402
from license_billing.services.stripe_gateway import StripeGateway  # noqa: E402

Base.metadata.create_all(engine)


@pytest.fixture()
def config():
    return replace(settings, stripe_call_delay_ms=0, memberstack_secret_key="")


@pytest.fixture()
def db_session():
    """Session on the shared in-memory engine; every table is emptied afterwards."""
    from license_billing.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex[:12]}@example.com"


# ============ Provider fakes ============


@pytest.fixture()
def fake_stripe():
    """A StripeGateway stand-in returning plain dicts with predictable ids."""
    gateway = MagicMock(spec=StripeGateway)
    counter = itertools.count(1)
    gateway.is_configured.return_value = True

    def _product(name, metadata=None):
        return {"id": f"prod_{next(counter)}", "name": name}

    def _price(product_id, unit_amount, currency, recurring=None, metadata=None):
        return {
            "id": f"price_{next(counter)}",
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency,
            "recurring": recurring,
        }

    def _item(subscription_id, price_id, quantity=1, metadata=None, proration_behavior=None):
        return {
            "id": f"si_{next(counter)}",
            "subscription": subscription_id,
            "price": {"id": price_id},
            "quantity": quantity,
            "metadata": metadata or {},
        }

    def _refund(payment_intent_id, amount, reason="requested_by_customer", metadata=None):
        return {
            "id": f"re_{next(counter)}",
            "payment_intent": payment_intent_id,
            "charge": "ch_test",
            "amount": amount,
            "currency": "usd",
            "status": "succeeded",
        }

    gateway.create_product.side_effect = _product
    gateway.create_price.side_effect = _price
    gateway.create_subscription_item.side_effect = _item
    gateway.create_refund.side_effect = _refund
    gateway.retrieve_price.side_effect = lambda price_id: {
        "id": price_id,
        "unit_amount": 1000,
        "currency": "usd",
        "recurring": {"interval": "month"},
    }
    gateway.create_checkout_session.return_value = {
        "id": "cs_test_123",
        "url": "https://checkout.stripe.test/cs_test_123",
    }
    gateway.list_subscription_items.return_value = []
    return gateway


@pytest.fixture()
def fake_identity():
    identity = MagicMock(spec=MemberstackGateway)
    identity.is_configured.return_value = False
    return identity


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, fake_stripe, fake_identity, config):
    """Test client with the database, gateways and settings overridden."""
    from license_billing.api.deps import (
        get_db,
        get_memberstack_gateway,
        get_stripe_gateway,
    )
    from license_billing.config import get_settings
    from license_billing.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: fake_stripe
    app.dependency_overrides[get_memberstack_gateway] = lambda: fake_identity
    app.dependency_overrides[get_settings] = lambda: config

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_access_token(email: str) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": email,
        "email": email,
        "exp": int((now + timedelta(minutes=15)).timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, os.environ["JWT_SECRET"], algorithm=os.environ["JWT_ALGORITHM"])


@pytest.fixture()
def auth_headers_for():
    def _build(email: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {_create_access_token(email)}"}

    return _build


@pytest.fixture()
def admin_headers():
    return {"X-Admin-Token": "admin-token"}


# ============ Factories ============


@pytest.fixture()
def user(db_session):
    user = User(email=_unique_email())
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def customer(db_session, user):
    customer = Customer(user_email=user.email, customer_id=f"cus_{uuid.uuid4().hex[:10]}")
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture()
def make_subscription(db_session, user, customer):
    def _build(purchase_type: PurchaseType = PurchaseType.site, **overrides) -> Subscription:
        values = {
            "subscription_id": f"sub_{uuid.uuid4().hex[:10]}",
            "user_email": user.email,
            "customer_id": customer.customer_id,
            "status": "active",
            "purchase_type": purchase_type,
            "billing_period": "monthly",
        }
        values.update(overrides)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _build


@pytest.fixture()
def make_item(db_session):
    def _build(subscription: Subscription, site_domain: str | None = None, **overrides):
        values = {
            "item_id": f"si_{uuid.uuid4().hex[:10]}",
            "subscription_id": subscription.subscription_id,
            "site_domain": site_domain,
            "price_id": "price_base",
            "quantity": 1,
            "status": SubscriptionItemStatus.active,
        }
        values.update(overrides)
        item = SubscriptionItem(**values)
        db_session.add(item)
        db_session.commit()
        db_session.refresh(item)
        return item

    return _build


@pytest.fixture()
def make_license(db_session):
    def _build(item: SubscriptionItem, customer_id: str, **overrides) -> License:
        values = {
            "license_key": f"KEY-TEST-{uuid.uuid4().hex[:4].upper()}-AAAA-BBBB",
            "customer_id": customer_id,
            "subscription_id": item.subscription_id,
            "item_id": item.item_id,
            "site_domain": item.site_domain,
            "status": LicenseStatus.active,
            "purchase_type": PurchaseType.site,
        }
        values.update(overrides)
        license_ = License(**values)
        db_session.add(license_)
        db_session.commit()
        db_session.refresh(license_)
        return license_

    return _build
