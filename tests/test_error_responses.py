from unittest.mock import patch

from license_billing.services.stripe_gateway import StripeGatewayError


def test_validation_error_envelope(client, auth_headers_for, user):
    response = client.post(
        "/purchase-quantity", json={"quantity": "many"}, headers=auth_headers_for(user.email)
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["request_id"]
    assert body["details"]


def test_http_error_envelope_carries_request_id(client):
    response = client.get("/licenses", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 401
    body = response.json()
    assert body == {
        "code": "http_401",
        "message": "Unauthorized",
        "details": None,
        "request_id": body["request_id"],
    }
    assert response.headers["X-Request-Id"] == body["request_id"]


def test_provider_failure_maps_to_502(client, auth_headers_for, user, fake_stripe):
    fake_stripe.create_checkout_session.side_effect = StripeGatewayError(
        "card_declined", "card_declined", http_status=402
    )

    response = client.post(
        "/purchase-quantity", json={"quantity": 1}, headers=auth_headers_for(user.email)
    )

    assert response.status_code == 502
    body = response.json()
    assert body["code"] == "payment_provider_error"
    assert body["details"] == {"provider_code": "card_declined", "provider_status": 402}


def test_health_endpoints(client):
    assert client.get("/health").json() == {"status": "ok"}
    ready = client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json()["checks"]["database"] == "ok"


def test_readiness_reports_database_failure(client):
    with patch("license_billing.main.SessionLocal", side_effect=RuntimeError("db down")):
        response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


def test_metrics_endpoint(client):
    client.get("/health")
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
