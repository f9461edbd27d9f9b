"""Prometheus metric inventory.

Every metric the service exports is defined here; the modules that own
the behavior import the metric and increment/observe it at the point of
action.  Prometheus scrapes them from GET /metrics.

Label values are always drawn from small closed sets (intent names,
message types, outcome names) so cardinality stays bounded.  Never put a
phone number, user id or checkout id in a label.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

GATEWAY_REQUESTS = Counter(
    "gateway_requests_total",
    "Calls to the M-Pesa Daraja API by operation and outcome",
    ["operation", "outcome"],  # token|push|query x ok|rejected|error
)

PAYMENT_EVENTS = Counter(
    "payment_events_total",
    "Payment lifecycle transitions and callback handling results",
    ["event"],  # created|push_failed|completed|failed|duplicate|ignored|parse_error
)

# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------

MESSAGES_SENT = Counter(
    "messages_sent_total",
    "Outbound WhatsApp messages by type and delivery status",
    ["message_type", "status"],  # lesson|welcome|reminder|payment|response x sent|failed
)

INBOUND_COMMANDS = Counter(
    "inbound_commands_total",
    "Inbound WhatsApp messages by resolved intent",
    ["intent"],
)

# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

LESSONS_DISPATCHED = Counter(
    "lessons_dispatched_total",
    "Scheduler work units by result",
    ["result"],  # delivered|finished|failed
)

SCHEDULER_RUN_DURATION = Histogram(
    "scheduler_run_duration_seconds",
    "Wall-clock duration of one lesson scheduler batch",
    # Pacing delay dominates: ~1s per lesson sent, divided by concurrency.
    buckets=[0.1, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
)
