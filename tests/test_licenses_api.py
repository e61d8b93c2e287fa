from sqlalchemy import select

from license_billing.models import LicenseStatus, PurchaseType, SubscriptionItem, SubscriptionItemStatus


def test_list_licenses_for_caller(client, auth_headers_for, user, make_subscription, make_item, make_license):
    subscription = make_subscription()
    make_license(make_item(subscription, site_domain="a.com"), subscription.customer_id)
    make_license(make_item(subscription, site_domain="b.com"), subscription.customer_id)

    response = client.get("/licenses", headers=auth_headers_for(user.email))

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert {item["site_domain"] for item in body["items"]} == {"a.com", "b.com"}


def test_list_licenses_requires_identity(client):
    assert client.get("/licenses").status_code == 401


def test_list_licenses_ignores_email_query_without_token(
    client, user, make_subscription, make_item, make_license
):
    subscription = make_subscription()
    make_license(make_item(subscription, site_domain="victim.com"), subscription.customer_id)

    response = client.get("/licenses", params={"email": user.email})

    assert response.status_code == 401
    assert "license_key" not in response.text


def test_activate_and_deactivate_round_trip(
    client, auth_headers_for, user, make_subscription, make_item, make_license, fake_stripe
):
    subscription = make_subscription(PurchaseType.quantity)
    license_ = make_license(
        make_item(subscription), subscription.customer_id, purchase_type=PurchaseType.quantity
    )
    headers = auth_headers_for(user.email)

    deactivated = client.post(
        "/deactivate-license", json={"license_key": license_.license_key}, headers=headers
    )
    activated = client.post(
        "/api/v1/activate-license",
        json={"license_key": f" {license_.license_key.lower()} ", "site_domain": "https://Used.io/"},
        headers=headers,
    )

    assert deactivated.json()["status"] == LicenseStatus.inactive.value
    assert activated.status_code == 200
    assert activated.json()["status"] == LicenseStatus.active.value
    assert activated.json()["used_site_domain"] == "used.io"
    fake_stripe.modify_subscription_item.assert_not_called()
    fake_stripe.delete_subscription_item.assert_not_called()


def test_deactivate_with_billing_adjustment_removes_item(
    client, auth_headers_for, user, db_session, make_subscription, make_item, make_license, fake_stripe
):
    subscription = make_subscription(PurchaseType.quantity)
    item = make_item(subscription)
    license_ = make_license(item, subscription.customer_id, purchase_type=PurchaseType.quantity)

    response = client.post(
        "/deactivate-license",
        json={"license_key": license_.license_key, "adjust_billing": True},
        headers=auth_headers_for(user.email),
    )

    assert response.status_code == 200
    fake_stripe.delete_subscription_item.assert_called_once_with(item.item_id, "create_prorations")
    stored = db_session.scalar(select(SubscriptionItem).where(SubscriptionItem.item_id == item.item_id))
    assert stored.status == SubscriptionItemStatus.removed


def test_reactivate_removed_item_reprovisions(
    client, auth_headers_for, user, db_session, make_subscription, make_item, make_license, fake_stripe
):
    subscription = make_subscription(PurchaseType.quantity)
    item = make_item(subscription, status=SubscriptionItemStatus.removed)
    license_ = make_license(
        item,
        subscription.customer_id,
        status=LicenseStatus.inactive,
        purchase_type=PurchaseType.quantity,
    )

    response = client.post(
        "/activate-license",
        json={"license_key": license_.license_key, "adjust_billing": True},
        headers=auth_headers_for(user.email),
    )

    assert response.status_code == 200
    assert response.json()["item_id"] != item.item_id
    fake_stripe.create_subscription_item.assert_called_once()


def test_foreign_license_is_not_found(client, auth_headers_for, make_subscription, make_item, make_license):
    subscription = make_subscription()
    license_ = make_license(make_item(subscription), subscription.customer_id)

    response = client.post(
        "/activate-license",
        json={"license_key": license_.license_key},
        headers=auth_headers_for("stranger@example.com"),
    )

    assert response.status_code == 404


def test_purchase_quantity_endpoint(client, auth_headers_for, user):
    response = client.post(
        "/purchase-quantity", json={"quantity": 2}, headers=auth_headers_for(user.email)
    )

    assert response.status_code == 200
    body = response.json()
    assert body["session_id"] == "cs_test_123"
    assert body["quantity"] == 2


def test_purchase_quantity_over_limit(client, auth_headers_for, user):
    response = client.post(
        "/purchase-quantity", json={"quantity": 500}, headers=auth_headers_for(user.email)
    )
    assert response.status_code == 400
