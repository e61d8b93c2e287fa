from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from license_billing.models import (
    License,
    PurchaseType,
    QueueStatus,
    Refund,
    SubscriptionItem,
    SubscriptionQueueItem,
)
from license_billing.services.common import as_utc
from license_billing.services.queue import QueueService, retry_delay
from license_billing.services.stripe_gateway import StripeGatewayError


def _enqueue(db_session, fake_stripe, config, subscription, keys, item_ids=(), amount=3000):
    svc = QueueService(db_session, fake_stripe, config)
    rows = svc.enqueue_slots(
        customer_id=subscription.customer_id,
        user_email=subscription.user_email,
        payment_intent_id="pi_queue",
        price_id="price_base",
        subscription_id=subscription.subscription_id,
        license_keys=list(keys),
        item_ids=list(item_ids),
        amount_received=amount,
        currency="usd",
    )
    db_session.commit()
    return svc, rows


KEYS = ["KEY-AAAA-AAAA-AAAA-AAA2", "KEY-AAAA-AAAA-AAAA-AAA3", "KEY-AAAA-AAAA-AAAA-AAA4"]


def test_enqueue_marks_existing_items_completed(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    _, rows = _enqueue(db_session, fake_stripe, config, subscription, KEYS, item_ids=["si_done"])

    statuses = [row.status for row in rows]
    assert statuses.count(QueueStatus.completed) == 1
    assert statuses.count(QueueStatus.pending) == 2
    assert all(row.refund_amount == 1000 for row in rows)
    assert all(row.max_attempts == config.queue_max_attempts for row in rows)


def test_enqueue_is_idempotent_per_payment_intent(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    _, first = _enqueue(db_session, fake_stripe, config, subscription, KEYS)
    _, second = _enqueue(db_session, fake_stripe, config, subscription, KEYS)

    assert {row.queue_id for row in first} == {row.queue_id for row in second}
    total = db_session.scalars(select(SubscriptionQueueItem)).all()
    assert len(total) == len(KEYS)


def test_drain_creates_items_and_issues_licenses(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    svc, _ = _enqueue(db_session, fake_stripe, config, subscription, KEYS[:2])

    result = svc.process_batch(limit=10)

    assert result.as_dict() == {"processed": 2, "successCount": 2, "failCount": 0}
    rows = svc.rows_for_payment_intent("pi_queue")
    assert all(row.status == QueueStatus.completed for row in rows)
    assert all(row.item_id for row in rows)
    for row in rows:
        license_ = db_session.get(License, row.license_key)
        assert license_ is not None
        assert license_.item_id == row.item_id
        assert license_.purchase_type == PurchaseType.quantity
    items = db_session.scalars(select(SubscriptionItem)).all()
    assert len(items) == 2
    _, kwargs = fake_stripe.create_subscription_item.call_args
    assert kwargs["proration_behavior"] == "none"


def test_failed_attempt_schedules_retry(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    svc, _ = _enqueue(db_session, fake_stripe, config, subscription, KEYS[:1])
    fake_stripe.create_subscription_item.side_effect = StripeGatewayError(
        "rate limited", "rate_limit", http_status=429
    )

    before = datetime.now(UTC)
    result = svc.process_batch()

    assert result.fail_count == 1
    row = svc.rows_for_payment_intent("pi_queue")[0]
    assert row.status == QueueStatus.pending
    assert row.attempts == 1
    assert row.error_message == "rate limited"
    assert as_utc(row.next_retry_at) >= before + retry_delay(config, 1) - timedelta(seconds=1)

    # Not eligible again until the backoff elapses.
    assert svc.process_batch().processed == 0


def test_exhausted_row_fails_and_refunds_once(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    svc, _ = _enqueue(db_session, fake_stripe, config, subscription, KEYS, amount=3000)
    fake_stripe.create_subscription_item.side_effect = StripeGatewayError(
        "boom", http_status=500
    )

    for _ in range(config.queue_max_attempts):
        for row in svc.rows_for_payment_intent("pi_queue"):
            row.next_retry_at = None
        db_session.commit()
        svc.process_batch()

    rows = svc.rows_for_payment_intent("pi_queue")
    assert all(row.status == QueueStatus.failed for row in rows)
    assert all(row.attempts == config.queue_max_attempts for row in rows)

    refunds = db_session.scalars(select(Refund)).all()
    assert len(refunds) == len(KEYS)
    assert {refund.queue_id for refund in refunds} == {row.queue_id for row in rows}
    assert all(refund.reason == "subscription_item_creation_failed" for refund in refunds)
    assert all(refund.amount == 1000 for refund in refunds)

    # Terminal rows are never picked up again.
    assert svc.process_batch().processed == 0
    assert fake_stripe.create_refund.call_count == len(KEYS)


def test_missing_reference_price_fails_immediately(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    svc, _ = _enqueue(db_session, fake_stripe, config, subscription, KEYS[:1])
    svc.pricing.reference_price = MagicMock(
        side_effect=ValueError("No price configured for billing period 'monthly'")
    )

    svc.process_batch()

    row = svc.rows_for_payment_intent("pi_queue")[0]
    assert row.status == QueueStatus.failed
    assert fake_stripe.create_refund.call_count == 1


def test_refund_failure_is_recorded_on_row(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    config = replace(config, queue_max_attempts=1)
    svc, _ = _enqueue(db_session, fake_stripe, config, subscription, KEYS[:1])
    fake_stripe.create_subscription_item.side_effect = StripeGatewayError("boom", http_status=500)
    fake_stripe.create_refund.side_effect = StripeGatewayError("card gone", http_status=400)

    svc.process_batch()

    row = svc.rows_for_payment_intent("pi_queue")[0]
    assert row.status == QueueStatus.failed
    assert "refund failed: card gone" in row.error_message
    assert db_session.scalars(select(Refund)).all() == []


def test_requeue_stale_processing(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    svc, rows = _enqueue(db_session, fake_stripe, config, subscription, KEYS[:2])
    stale, fresh = rows
    stale.status = QueueStatus.processing
    stale.updated_at = datetime.now(UTC) - timedelta(hours=2)
    fresh.status = QueueStatus.processing
    db_session.commit()

    assert svc.requeue_stale_processing() == 1
    db_session.commit()

    db_session.refresh(stale)
    db_session.refresh(fresh)
    assert stale.status == QueueStatus.pending
    assert fresh.status == QueueStatus.processing


def test_invalid_transition_raises(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    svc, rows = _enqueue(db_session, fake_stripe, config, subscription, KEYS[:1], item_ids=["si_1"])

    with pytest.raises(ValueError, match="Cannot transition"):
        svc._transition(rows[0], QueueStatus.pending)


def test_sweep_removes_only_orphaned_items(
    db_session, fake_stripe, config, make_subscription, make_item, make_license
):
    subscription = make_subscription(PurchaseType.quantity)
    licensed = make_item(subscription)
    make_license(licensed, subscription.customer_id, license_key="KEY-HAVE-HAVE-HAVE-HAVE")
    orphan = make_item(subscription)
    old = int((datetime.now(UTC) - timedelta(days=3)).timestamp())
    recent = int(datetime.now(UTC).timestamp())

    def _remote(item_id, key, created):
        return {
            "id": item_id,
            "created": created,
            "metadata": {"purchase_type": "quantity", "license_key": key},
        }

    fake_stripe.list_subscription_items.return_value = [
        _remote(licensed.item_id, "KEY-HAVE-HAVE-HAVE-HAVE", old),
        _remote(orphan.item_id, "KEY-GONE-GONE-GONE-GONE", old),
        _remote("si_recent", "KEY-NEWW-NEWW-NEWW-NEWW", recent),
        {"id": "si_site", "created": old, "metadata": {"purchase_type": "site"}},
    ]

    removed = QueueService(db_session, fake_stripe, config).sweep_orphaned_items()
    db_session.commit()

    assert removed == 1
    fake_stripe.delete_subscription_item.assert_called_once_with(orphan.item_id, "none")
    remaining = {item.item_id for item in db_session.scalars(select(SubscriptionItem)).all()}
    assert remaining == {licensed.item_id}


def test_status_for_payment_intent_counts(db_session, fake_stripe, config, make_subscription):
    subscription = make_subscription(PurchaseType.quantity)
    svc, _ = _enqueue(db_session, fake_stripe, config, subscription, KEYS, item_ids=["si_done"])

    status = svc.status_for_payment_intent("pi_queue")

    assert status["total"] == 3
    assert status["counts"] == {"pending": 2, "processing": 0, "completed": 1, "failed": 0}
    assert {entry["license_key"] for entry in status["items"]} == set(KEYS)
