import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from license_billing.db import Base, TimestampMixin

# ── Enums ────────────────────────────────────────────────


class PurchaseType(str, enum.Enum):
    site = "site"
    quantity = "quantity"


class SubscriptionItemStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    removed = "removed"


class LicenseStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"


class QueueStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class WebhookEventStatus(str, enum.Enum):
    processed = "processed"
    ignored = "ignored"
    failed = "failed"


# ── Accounts ─────────────────────────────────────────────


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    default_price_id: Mapped[str | None] = mapped_column(String(255))

    customers = relationship("Customer", back_populates="user")
    pending_sites = relationship("PendingSite", back_populates="user")


class Customer(TimestampMixin, Base):
    """Provider-side billing identity; one user may accumulate several."""

    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("user_email", "customer_id", name="uq_customers_email_customer"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_email: Mapped[str] = mapped_column(
        String(255), ForeignKey("users.email", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    user = relationship("User", back_populates="customers")


# ── Subscriptions ────────────────────────────────────────


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True
    )
    user_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(40), nullable=False, default="active")
    purchase_type: Mapped[PurchaseType] = mapped_column(
        Enum(PurchaseType), nullable=False, default=PurchaseType.site
    )
    billing_period: Mapped[str | None] = mapped_column(String(20))
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    cancel_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    items = relationship(
        "SubscriptionItem",
        back_populates="subscription",
        primaryjoin="Subscription.subscription_id == foreign(SubscriptionItem.subscription_id)",
    )


class SubscriptionItem(TimestampMixin, Base):
    __tablename__ = "subscription_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    item_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    subscription_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    site_domain: Mapped[str | None] = mapped_column(String(255), index=True)
    price_id: Mapped[str | None] = mapped_column(String(255))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[SubscriptionItemStatus] = mapped_column(
        Enum(SubscriptionItemStatus), nullable=False, default=SubscriptionItemStatus.active
    )
    removed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    subscription = relationship(
        "Subscription",
        back_populates="items",
        primaryjoin="Subscription.subscription_id == foreign(SubscriptionItem.subscription_id)",
    )


class PendingSite(Base):
    __tablename__ = "pending_sites"
    __table_args__ = (
        UniqueConstraint("user_email", "site_domain", name="uq_pending_sites_email_site"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_email: Mapped[str] = mapped_column(
        String(255), ForeignKey("users.email", ondelete="CASCADE"), nullable=False, index=True
    )
    site_domain: Mapped[str] = mapped_column(String(255), nullable=False)
    price_id: Mapped[str | None] = mapped_column(String(255))
    billing_period: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    user = relationship("User", back_populates="pending_sites")


# ── Licenses ─────────────────────────────────────────────


class License(TimestampMixin, Base):
    __tablename__ = "licenses"

    license_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), index=True)
    item_id: Mapped[str | None] = mapped_column(String(255), index=True)
    site_domain: Mapped[str | None] = mapped_column(String(255), index=True)
    used_site_domain: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[LicenseStatus] = mapped_column(
        Enum(LicenseStatus), nullable=False, default=LicenseStatus.active
    )
    purchase_type: Mapped[PurchaseType] = mapped_column(
        Enum(PurchaseType), nullable=False, default=PurchaseType.site
    )


# ── Money movement ───────────────────────────────────────


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(40), nullable=False, default="succeeded")
    site_domain: Mapped[str | None] = mapped_column(String(255))
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), index=True)
    invoice_id: Mapped[str | None] = mapped_column(String(255))


class Refund(TimestampMixin, Base):
    __tablename__ = "refunds"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    refund_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    payment_intent_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    charge_id: Mapped[str | None] = mapped_column(String(255))
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_email: Mapped[str | None] = mapped_column(String(255))
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(40), nullable=False, default="succeeded")
    reason: Mapped[str | None] = mapped_column(String(255))
    queue_id: Mapped[str | None] = mapped_column(String(64), index=True)
    license_key: Mapped[str | None] = mapped_column(String(64))
    subscription_id: Mapped[str | None] = mapped_column(String(255))
    attempts: Mapped[int | None] = mapped_column(Integer)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)


# ── Deferred work & dedup ────────────────────────────────


class SubscriptionQueueItem(TimestampMixin, Base):
    __tablename__ = "subscription_queue"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    queue_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_intent_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    price_id: Mapped[str] = mapped_column(String(255), nullable=False)
    license_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    subscription_id: Mapped[str | None] = mapped_column(String(255))
    item_id: Mapped[str | None] = mapped_column(String(255))
    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus), nullable=False, default=QueueStatus.pending, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error_message: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    operation_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    operation_data: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(255), index=True)
    event_type: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), index=True)
    customer_id: Mapped[str | None] = mapped_column(String(255), index=True)
    payload: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[WebhookEventStatus] = mapped_column(
        Enum(WebhookEventStatus), nullable=False, default=WebhookEventStatus.processed
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
