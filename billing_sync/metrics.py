from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP requests that ended in a 5xx response",
    ["method", "path", "status"],
)

# ── Billing ──────────────────────────────────────────────

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Stripe webhook events by type and outcome",
    ["event_type", "outcome"],
)
GATEWAY_REQUESTS = Counter(
    "billing_gateway_requests_total",
    "Outbound Stripe API calls by operation and outcome",
    ["operation", "outcome"],
)
PAYMENTS_DROPPED = Counter(
    "billing_payments_dropped_total",
    "Invoice payment events that produced no payment record",
    ["reason"],
)
