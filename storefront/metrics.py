# storefront/metrics.py
from prometheus_client import Counter, Histogram, make_asgi_app

# Counters
orders_created = Counter("orders_created_total", "Orders created from carts")
payments_total = Counter("payments_total", "Payment attempts by final status", ["status"])
refunds_total = Counter("refunds_total", "Refund attempts by final status", ["status"])

idempotency_hits = Counter(
    "idempotency_hits_total",
    "Idempotency hits (same key, existing record returned)",
    ["endpoint"],
)
idempotency_conflicts = Counter(
    "idempotency_conflicts_total",
    "Key reused for a different request (409)",
    ["endpoint"],
)

payment_errors = Counter("payment_errors_total", "Payment errors", ["type"])
refund_errors = Counter("refund_errors_total", "Refund errors", ["type"])

webhook_events = Counter(
    "webhook_events_total",
    "Provider webhook deliveries",
    ["type", "outcome"],  # outcome: applied | duplicate | error
)

out_of_stock = Counter("out_of_stock_total", "Stock deductions rejected for shortfall")
tx_retries = Counter("tx_retries_total", "Transactions retried after a deadlock or lock timeout")

# Latency
payment_latency = Histogram("payment_latency_seconds", "Payment latency in seconds")
refund_latency = Histogram("refund_latency_seconds", "Refund latency in seconds")

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
