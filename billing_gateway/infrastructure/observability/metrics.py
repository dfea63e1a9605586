"""Prometheus metrics for monitoring charges, gateway health, webhooks and the audit trail"""

from prometheus_client import Counter, Histogram

# Charge metrics
charge_counter = Counter(
    "billing_charge_total",
    "Charge attempts handled by the orchestrator",
    ["outcome"],  # approved | rejected | pending | duplicate
)

# Gateway metrics
gateway_retry_counter = Counter(
    "billing_gateway_retries_total",
    "Failed gateway attempts that were retried or exhausted",
    ["operation", "final"],
)

gateway_latency_histogram = Histogram(
    "billing_gateway_latency_seconds",
    "Payment processor response time",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Webhook metrics
webhook_counter = Counter(
    "billing_webhook_total",
    "Webhook deliveries by reconciliation outcome",
    ["outcome"],
)

# Audit / events
critical_audit_counter = Counter(
    "billing_critical_audit_total",
    "Critical operations written to the audit log",
    ["action"],
)

event_handler_failure_counter = Counter(
    "billing_event_handler_failures_total",
    "Domain event handlers that raised",
    ["event"],
)

# Sweeps
sweep_counter = Counter(
    "billing_sweep_actions_total",
    "Subscriptions touched by scheduled sweeps",
    ["sweep", "result"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_charge(outcome: str) -> None:
    charge_counter.labels(outcome=outcome).inc()


def record_webhook(outcome: str) -> None:
    webhook_counter.labels(outcome=outcome).inc()
