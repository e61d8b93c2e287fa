from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

WEBHOOK_EVENTS = Counter(
    "stripe_webhook_events_total",
    "Stripe webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
)
QUEUE_TRANSITIONS = Counter(
    "subscription_queue_transitions_total",
    "Subscription queue row status transitions",
    ["status"],
)
REFUNDS_ISSUED = Counter(
    "subscription_queue_refunds_total",
    "Refunds issued after queue retry exhaustion",
    ["outcome"],
)
PRORATION_SOURCE = Counter(
    "quantity_proration_source_total",
    "Which tier produced the prorated amount for a quantity purchase",
    ["source"],
)
