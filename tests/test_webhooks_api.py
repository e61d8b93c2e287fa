import hashlib
import hmac
import json
from dataclasses import replace

from sqlalchemy import select

from license_billing.config import get_settings
from license_billing.main import app
from license_billing.models import (
    Customer,
    License,
    Payment,
    PendingSite,
    PurchaseType,
    Subscription,
    SubscriptionItem,
    User,
    WebhookEvent,
    WebhookEventStatus,
)
from license_billing.services.stripe_gateway import InvalidWebhookError

BUYER = "buyer@example.com"


def _post_event(client, fake_stripe, event):
    fake_stripe.construct_event.return_value = event
    return client.post(
        "/webhook",
        content=json.dumps(event).encode(),
        headers={"stripe-signature": "t=1,v1=abc"},
    )


def _checkout_event(event_id="evt_checkout_1", **session_overrides):
    session = {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": "cus_buyer",
        "subscription": "sub_buyer",
        "customer_details": {"email": "Buyer@Example.com"},
        "amount_total": 1000,
        "currency": "usd",
        "payment_intent": None,
        "metadata": {},
        "custom_fields": [
            {"key": "enteryourlivedomain", "text": {"value": "https://www.buyer-site.com/"}}
        ],
    }
    session.update(session_overrides)
    return {"id": event_id, "type": "checkout.session.completed", "data": {"object": session}}


def _remote_subscription():
    return {
        "id": "sub_buyer",
        "customer": "cus_buyer",
        "status": "active",
        "metadata": {},
        "current_period_start": 1_700_000_000,
        "current_period_end": 1_702_592_000,
        "items": {
            "data": [
                {
                    "id": "si_buyer",
                    "quantity": 1,
                    "price": {"id": "price_site", "recurring": {"interval": "month"}},
                    "metadata": {},
                }
            ]
        },
    }


def test_webhook_requires_configured_secret(client, fake_stripe, config):
    app.dependency_overrides[get_settings] = lambda: replace(config, stripe_webhook_secret="")

    response = client.post("/webhook", content=b"{}")

    assert response.status_code == 503
    fake_stripe.construct_event.assert_not_called()


def test_webhook_rejects_bad_signature(client, fake_stripe):
    fake_stripe.construct_event.side_effect = InvalidWebhookError("Invalid signature")

    response = client.post("/webhook", content=b"{}", headers={"stripe-signature": "bad"})

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid signature"


def test_new_site_subscription_checkout(client, fake_stripe, db_session):
    db_session.add(User(email=BUYER))
    db_session.add(PendingSite(user_email=BUYER, site_domain="www.buyer-site.com"))
    db_session.commit()
    fake_stripe.retrieve_subscription.return_value = _remote_subscription()

    response = _post_event(client, fake_stripe, _checkout_event())

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert db_session.scalar(select(Customer).where(Customer.customer_id == "cus_buyer"))
    subscription = db_session.scalar(select(Subscription))
    assert subscription.subscription_id == "sub_buyer"
    assert subscription.billing_period == "monthly"
    item = db_session.scalar(select(SubscriptionItem))
    assert item.site_domain == "www.buyer-site.com"
    license_ = db_session.scalar(select(License))
    assert license_.item_id == "si_buyer"
    assert license_.purchase_type == PurchaseType.site
    payment = db_session.scalar(select(Payment))
    assert payment.amount == 1000
    assert db_session.scalars(select(PendingSite)).all() == []
    event = db_session.scalar(select(WebhookEvent))
    assert event.status == WebhookEventStatus.processed


def test_duplicate_delivery_is_acknowledged_without_side_effects(client, fake_stripe, db_session):
    fake_stripe.retrieve_subscription.return_value = _remote_subscription()
    event = _checkout_event()

    first = _post_event(client, fake_stripe, event)
    second = _post_event(client, fake_stripe, event)

    assert first.status_code == 200
    assert second.json() == {"status": "ok", "duplicate": True}
    assert len(db_session.scalars(select(License)).all()) == 1
    assert fake_stripe.retrieve_subscription.call_count == 1


def test_quantity_payment_checkout_is_deferred_to_payment_intent(client, fake_stripe, db_session):
    event = _checkout_event(
        mode="payment",
        subscription=None,
        payment_intent={"id": "pi_qty", "metadata": {"usecase": "3"}},
    )

    response = _post_event(client, fake_stripe, event)

    assert response.status_code == 200
    assert response.json()["reason"] == "handled_by_payment_intent"
    assert db_session.scalars(select(User)).all() == []
    assert db_session.scalars(select(License)).all() == []
    fake_stripe.retrieve_subscription.assert_not_called()


def test_unhandled_event_is_logged_as_ignored(client, fake_stripe, db_session):
    event = {"id": "evt_other", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}

    response = _post_event(client, fake_stripe, event)

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    logged = db_session.scalar(select(WebhookEvent))
    assert logged.status == WebhookEventStatus.ignored


def test_failed_event_rolls_back_and_redelivery_succeeds(client, fake_stripe, db_session):
    fake_stripe.retrieve_subscription.side_effect = RuntimeError("provider exploded")
    event = _checkout_event(event_id="evt_retry")

    failed = _post_event(client, fake_stripe, event)

    assert failed.status_code == 500
    assert failed.json()["event_id"] == "evt_retry"
    assert db_session.scalars(select(User)).all() == []
    logged = db_session.scalars(select(WebhookEvent)).all()
    assert [row.status for row in logged] == [WebhookEventStatus.failed]
    assert "provider exploded" in logged[0].error_message

    fake_stripe.retrieve_subscription.side_effect = None
    fake_stripe.retrieve_subscription.return_value = _remote_subscription()
    retried = _post_event(client, fake_stripe, event)

    assert retried.status_code == 200
    assert retried.json()["status"] == "ok"
    assert len(db_session.scalars(select(License)).all()) == 1


def test_quantity_subscription_checkout_issues_a_license_per_slot(client, fake_stripe, db_session):
    fake_stripe.retrieve_subscription.return_value = {
        "id": "sub_qty",
        "customer": "cus_buyer",
        "status": "active",
        "metadata": {"usecase": "3"},
        "items": {
            "data": [
                {
                    "id": "si_slots",
                    "quantity": 4,
                    "price": {"id": "price_slot", "recurring": {"interval": "month"}},
                    "metadata": {},
                }
            ]
        },
    }
    event = _checkout_event(
        event_id="evt_qty_sub",
        subscription="sub_qty",
        amount_total=4000,
        metadata={"usecase": "3"},
        custom_fields=[],
    )

    response = _post_event(client, fake_stripe, event)

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    subscriptions = db_session.scalars(select(Subscription)).all()
    assert [s.purchase_type for s in subscriptions] == [PurchaseType.quantity]
    items = db_session.scalars(select(SubscriptionItem)).all()
    assert len(items) == 1
    assert items[0].site_domain is None
    assert items[0].quantity == 4
    licenses = db_session.scalars(select(License)).all()
    assert len({license_.license_key for license_ in licenses}) == 4
    assert all(license_.item_id == "si_slots" for license_ in licenses)
    assert all(license_.purchase_type == PurchaseType.quantity for license_ in licenses)
    payments = db_session.scalars(select(Payment)).all()
    assert len(payments) == 1
    assert payments[0].amount == 4000


def test_checkout_matches_sites_by_cloned_price_metadata(client, fake_stripe, db_session):
    def _item(item_id, site):
        return {
            "id": item_id,
            "quantity": 1,
            "price": {
                "id": f"price_{item_id}",
                "recurring": {"interval": "month"},
                "metadata": {"site": site},
            },
            "metadata": {},
        }

    remote = _remote_subscription()
    remote["metadata"] = {"site_0": "first.com", "site_1": "second.com"}
    # Returned in the opposite order to the checkout line items.
    remote["items"]["data"] = [_item("si_second", "second.com"), _item("si_first", "first.com")]
    fake_stripe.retrieve_subscription.return_value = remote

    response = _post_event(client, fake_stripe, _checkout_event(event_id="evt_two_sites"))

    assert response.status_code == 200
    sites = {item.item_id: item.site_domain for item in db_session.scalars(select(SubscriptionItem))}
    assert sites == {"si_first": "first.com", "si_second": "second.com"}
    licensed = {lic.item_id: lic.site_domain for lic in db_session.scalars(select(License))}
    assert licensed == sites


def test_memberstack_member_created(client, db_session):
    payload = {"event": "member.created", "payload": {"id": "mem_1", "email": "New@Example.com"}}

    response = client.post("/memberstack-webhook", content=json.dumps(payload).encode())

    assert response.status_code == 200
    assert response.json()["handled"] is True
    assert db_session.scalar(select(User).where(User.email == "new@example.com"))


def test_memberstack_webhook_checks_signature(client, config):
    app.dependency_overrides[get_settings] = lambda: replace(
        config, memberstack_webhook_secret="ms_secret"
    )
    body = json.dumps({"event": "member.updated", "payload": {}}).encode()
    good = hmac.new(b"ms_secret", body, hashlib.sha256).hexdigest()

    rejected = client.post(
        "/memberstack-webhook", content=body, headers={"x-memberstack-signature": "nope"}
    )
    accepted = client.post(
        "/memberstack-webhook", content=body, headers={"x-memberstack-signature": good}
    )

    assert rejected.status_code == 400
    assert accepted.status_code == 200
    assert accepted.json()["handled"] is False


def test_memberstack_webhook_rejects_invalid_json(client):
    response = client.post("/memberstack-webhook", content=b"not json")
    assert response.status_code == 400
