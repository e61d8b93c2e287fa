from dataclasses import replace

from license_billing.config import RECOMMENDED_MAX_QUANTITY, settings, validate_settings


def _valid():
    return replace(
        settings,
        stripe_secret_key="sk_test",
        stripe_webhook_secret="whsec",
        jwt_secret="secret",
        admin_api_token="token",
        queue_batch_threshold=10,
        queue_immediate_count=5,
        max_quantity_per_purchase=RECOMMENDED_MAX_QUANTITY,
    )


def test_complete_settings_produce_no_warnings():
    assert validate_settings(_valid()) == []


def test_missing_secrets_are_reported():
    warnings = validate_settings(replace(_valid(), stripe_secret_key="", stripe_webhook_secret=""))
    assert any("STRIPE_SECRET_KEY" in w for w in warnings)
    assert any("STRIPE_WEBHOOK_SECRET" in w for w in warnings)


def test_immediate_count_above_threshold_is_reported():
    warnings = validate_settings(replace(_valid(), queue_immediate_count=20))
    assert any("QUEUE_IMMEDIATE_COUNT" in w for w in warnings)


def test_large_max_quantity_is_reported():
    warnings = validate_settings(replace(_valid(), max_quantity_per_purchase=50))
    assert any("MAX_QUANTITY_PER_PURCHASE" in w for w in warnings)


def test_billing_period_price_selects_period():
    config = replace(
        settings,
        monthly_product_id="prod_m",
        monthly_unit_amount=1000,
        monthly_currency="usd",
        yearly_product_id="prod_y",
        yearly_unit_amount=10000,
        yearly_currency="eur",
    )
    assert config.billing_period_price("monthly") == ("prod_m", 1000, "usd")
    assert config.billing_period_price("yearly") == ("prod_y", 10000, "eur")
