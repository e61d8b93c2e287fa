"""Deferred subscription-item creation with retry, backoff and refunds."""

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from license_billing.config import Settings, settings
from license_billing.metrics import QUEUE_TRANSITIONS, REFUNDS_ISSUED
from license_billing.models.billing import (
    License,
    PurchaseType,
    QueueStatus,
    Refund,
    Subscription,
    SubscriptionQueueItem,
)
from license_billing.services.accounts import AccountService
from license_billing.services.common import as_utc, pace
from license_billing.services.licenses import LicenseService
from license_billing.services.pricing import PricingService
from license_billing.services.stripe_gateway import (
    StripeGateway,
    StripeGatewayError,
    stripe_gateway,
)

logger = logging.getLogger(__name__)

# Rows only move forward; processing -> pending is the scheduled retry.
VALID_TRANSITIONS: dict[QueueStatus, set[QueueStatus]] = {
    QueueStatus.pending: {QueueStatus.processing},
    QueueStatus.processing: {QueueStatus.completed, QueueStatus.pending, QueueStatus.failed},
    QueueStatus.completed: set(),
    QueueStatus.failed: set(),
}


def _generate_queue_id() -> str:
    return f"queue_{secrets.token_hex(12)}"


def retry_delay(config: Settings, attempts: int) -> timedelta:
    """Backoff after ``attempts`` failures: base * 2^attempts (2, 4, 8 minutes by default)."""
    return timedelta(seconds=config.queue_retry_base_seconds * (2**attempts))


@dataclass
class DrainResult:
    processed: int = 0
    success_count: int = 0
    fail_count: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "successCount": self.success_count,
            "failCount": self.fail_count,
        }


class QueueService:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway | None = None,
        config: Settings | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway
        self.config = config or settings
        self.licenses = LicenseService(db, self.gateway, self.config)
        self.pricing = PricingService(db, self.gateway, self.config)

    # ── State machine ────────────────────────────────────

    def _transition(self, row: SubscriptionQueueItem, target: QueueStatus) -> None:
        allowed = VALID_TRANSITIONS.get(row.status, set())
        if target not in allowed:
            raise ValueError(f"Cannot transition from {row.status.value} to {target.value}")
        row.status = target
        QUEUE_TRANSITIONS.labels(target.value).inc()

    # ── Enqueue ──────────────────────────────────────────

    def enqueue_slots(
        self,
        *,
        customer_id: str,
        user_email: str,
        payment_intent_id: str,
        price_id: str,
        subscription_id: str | None,
        license_keys: list[str],
        item_ids: list[str],
        amount_received: int,
        currency: str,
    ) -> list[SubscriptionQueueItem]:
        """Write one row per slot; slots whose item already exists start completed."""
        existing = self.rows_for_payment_intent(payment_intent_id)
        if existing:
            return existing

        share = amount_received // len(license_keys) if license_keys else 0
        now = datetime.now(UTC)
        rows: list[SubscriptionQueueItem] = []
        for index, key in enumerate(license_keys):
            item_id = item_ids[index] if index < len(item_ids) else None
            row = SubscriptionQueueItem(
                queue_id=_generate_queue_id(),
                customer_id=customer_id,
                user_email=user_email,
                payment_intent_id=payment_intent_id,
                price_id=price_id,
                license_key=key,
                quantity=1,
                subscription_id=subscription_id,
                item_id=item_id,
                refund_amount=share,
                currency=currency,
                status=QueueStatus.completed if item_id else QueueStatus.pending,
                attempts=0,
                max_attempts=self.config.queue_max_attempts,
                processed_at=now if item_id else None,
            )
            self.db.add(row)
            rows.append(row)
            QUEUE_TRANSITIONS.labels(row.status.value).inc()
        self.db.flush()
        logger.info(
            "Queued %d of %d slots for %s",
            sum(1 for r in rows if r.status == QueueStatus.pending),
            len(rows),
            payment_intent_id,
        )
        return rows

    # ── Drain ────────────────────────────────────────────

    def _eligible_rows(self, limit: int) -> list[SubscriptionQueueItem]:
        now = datetime.now(UTC)
        stmt = (
            select(SubscriptionQueueItem)
            .where(
                SubscriptionQueueItem.status == QueueStatus.pending,
                or_(
                    SubscriptionQueueItem.next_retry_at.is_(None),
                    SubscriptionQueueItem.next_retry_at <= now,
                ),
            )
            .order_by(SubscriptionQueueItem.created_at.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def process_batch(self, limit: int = 10) -> DrainResult:
        """Drain up to ``limit`` eligible rows, committing after each row."""
        result = DrainResult()
        rows = self._eligible_rows(limit)
        for index, row in enumerate(rows):
            if index:
                pace(self.config)
            self._transition(row, QueueStatus.processing)
            self.db.commit()
            if self._process_row(row):
                result.success_count += 1
            else:
                result.fail_count += 1
            result.processed += 1
            self.db.commit()
        if rows:
            logger.info(
                "Queue drain processed %d rows (%d ok, %d failed)",
                result.processed,
                result.success_count,
                result.fail_count,
            )
        return result

    def _process_row(self, row: SubscriptionQueueItem) -> bool:
        try:
            item = self._create_slot_item(row)
        except StripeGatewayError as exc:
            self._record_failure(row, exc.message)
            return False
        except ValueError as exc:
            # No usable reference price; retrying cannot help.
            row.attempts = max(row.attempts, row.max_attempts - 1)
            self._record_failure(row, str(exc))
            return False

        row.item_id = item["id"]
        row.processed_at = datetime.now(UTC)
        row.error_message = None
        self._transition(row, QueueStatus.completed)
        AccountService(self.db).upsert_item(row.subscription_id, item, None)
        self.licenses.issue_license(
            customer_id=row.customer_id,
            subscription_id=row.subscription_id,
            item_id=item["id"],
            purchase_type=PurchaseType.quantity,
            license_key=row.license_key,
        )
        self.db.flush()
        logger.info("Queue row completed", extra={"queue_id": row.queue_id})
        return True

    def _create_slot_item(self, row: SubscriptionQueueItem) -> dict[str, Any]:
        if not row.subscription_id:
            raise StripeGatewayError("Queue row has no target subscription", "missing_subscription")
        reference = self.pricing.reference_price(row.price_id)
        metadata = {"license_key": row.license_key, "purchase_type": PurchaseType.quantity.value}
        slot_price = self.pricing.clone_price(reference, f"License {row.license_key}", metadata)
        # Already paid for through the prorated checkout.
        return self.gateway.create_subscription_item(
            row.subscription_id,
            slot_price,
            quantity=row.quantity,
            metadata=metadata,
            proration_behavior="none",
        )

    def _record_failure(self, row: SubscriptionQueueItem, message: str) -> None:
        row.attempts += 1
        row.error_message = message
        if row.attempts >= row.max_attempts:
            self._transition(row, QueueStatus.failed)
            row.processed_at = datetime.now(UTC)
            logger.error(
                "Queue row failed after %d attempts: %s",
                row.attempts,
                message,
                extra={"queue_id": row.queue_id},
            )
            self._refund_slot(row)
            return
        self._transition(row, QueueStatus.pending)
        row.next_retry_at = datetime.now(UTC) + retry_delay(self.config, row.attempts)
        logger.warning(
            "Queue row attempt %d failed, retrying at %s: %s",
            row.attempts,
            row.next_retry_at.isoformat(),
            message,
            extra={"queue_id": row.queue_id},
        )

    def _refund_slot(self, row: SubscriptionQueueItem) -> Refund | None:
        if row.refund_amount <= 0:
            REFUNDS_ISSUED.labels("skipped").inc()
            return None
        try:
            refund = self.gateway.create_refund(
                row.payment_intent_id,
                row.refund_amount,
                reason="requested_by_customer",
                metadata={
                    "queue_id": row.queue_id,
                    "license_key": row.license_key,
                    "attempts": str(row.attempts),
                },
            )
        except StripeGatewayError as exc:
            REFUNDS_ISSUED.labels("error").inc()
            row.error_message = f"{row.error_message}; refund failed: {exc.message}"
            logger.error(
                "Refund for queue row failed: %s", exc.message, extra={"queue_id": row.queue_id}
            )
            return None

        record = Refund(
            refund_id=refund["id"],
            payment_intent_id=row.payment_intent_id,
            charge_id=refund.get("charge"),
            customer_id=row.customer_id,
            user_email=row.user_email,
            amount=int(refund.get("amount") or row.refund_amount),
            currency=refund.get("currency") or row.currency,
            status=refund.get("status") or "succeeded",
            reason="subscription_item_creation_failed",
            queue_id=row.queue_id,
            license_key=row.license_key,
            subscription_id=row.subscription_id,
            attempts=row.attempts,
            metadata_={"error": row.error_message},
        )
        self.db.add(record)
        self.db.flush()
        REFUNDS_ISSUED.labels("succeeded").inc()
        logger.info("Refunded failed slot %s", row.license_key, extra={"queue_id": row.queue_id})
        return record

    # ── Sweeps ───────────────────────────────────────────

    def requeue_stale_processing(self) -> int:
        """Return rows abandoned in ``processing`` by a crashed drain to ``pending``."""
        cutoff = datetime.now(UTC) - timedelta(seconds=self.config.queue_stale_processing_seconds)
        stmt = select(SubscriptionQueueItem).where(
            SubscriptionQueueItem.status == QueueStatus.processing,
            SubscriptionQueueItem.updated_at < cutoff,
        )
        rows = list(self.db.scalars(stmt).all())
        for row in rows:
            self._transition(row, QueueStatus.pending)
            row.next_retry_at = None
            logger.warning("Requeued stale processing row", extra={"queue_id": row.queue_id})
        self.db.flush()
        return len(rows)

    def sweep_orphaned_items(self) -> int:
        """Delete quantity items left behind by abandoned quantity checkouts."""
        accounts = AccountService(self.db)
        cutoff = datetime.now(UTC) - timedelta(hours=self.config.orphaned_item_max_age_hours)
        stmt = select(Subscription.subscription_id).where(
            Subscription.purchase_type == PurchaseType.quantity,
            Subscription.status.in_(("active", "trialing", "past_due")),
        )
        removed = 0
        for subscription_id in self.db.scalars(stmt).all():
            for remote_item in self.gateway.list_subscription_items(subscription_id):
                metadata = remote_item.get("metadata") or {}
                key = metadata.get("license_key")
                if metadata.get("purchase_type") != PurchaseType.quantity.value or not key:
                    continue
                created = remote_item.get("created")
                if created and datetime.fromtimestamp(int(created), tz=UTC) > cutoff:
                    continue
                if self.db.get(License, key) is not None:
                    continue
                queued = self.db.scalar(
                    select(SubscriptionQueueItem.id).where(
                        SubscriptionQueueItem.license_key == key
                    )
                )
                if queued is not None:
                    continue
                self.gateway.delete_subscription_item(remote_item["id"], "none")
                local = accounts.get_item(remote_item["id"])
                if local is not None:
                    self.db.delete(local)
                removed += 1
                logger.info("Removed orphaned item %s (key %s)", remote_item["id"], key)
        self.db.flush()
        return removed

    # ── Status ───────────────────────────────────────────

    def rows_for_payment_intent(self, payment_intent_id: str) -> list[SubscriptionQueueItem]:
        stmt = (
            select(SubscriptionQueueItem)
            .where(SubscriptionQueueItem.payment_intent_id == payment_intent_id)
            .order_by(SubscriptionQueueItem.created_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    def status_for_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        rows = self.rows_for_payment_intent(payment_intent_id)
        counts = {status.value: 0 for status in QueueStatus}
        for row in rows:
            counts[row.status.value] += 1
        return {
            "payment_intent_id": payment_intent_id,
            "total": len(rows),
            "counts": counts,
            "items": [
                {
                    "queue_id": row.queue_id,
                    "license_key": row.license_key,
                    "status": row.status.value,
                    "attempts": row.attempts,
                    "item_id": row.item_id,
                    "error_message": row.error_message,
                    "next_retry_at": (
                        as_utc(row.next_retry_at).isoformat() if row.next_retry_at else None
                    ),
                }
                for row in rows
            ],
        }
