from license_billing.models.billing import (  # noqa: F401
    Customer,
    IdempotencyKey,
    License,
    LicenseStatus,
    Payment,
    PendingSite,
    PurchaseType,
    QueueStatus,
    Refund,
    Subscription,
    SubscriptionItem,
    SubscriptionItemStatus,
    SubscriptionQueueItem,
    User,
    WebhookEvent,
    WebhookEventStatus,
)
