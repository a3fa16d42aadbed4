"""
Operational Metrics for Ledgerline

Prometheus metrics for subscription lifecycle health, gateway reliability
and the renewal scheduler.
"""

from prometheus_client import Counter, Histogram

# --- Lifecycle ---
SUBSCRIPTION_TRANSITIONS = Counter(
    "ledgerline_subscription_transitions_total",
    "Subscription state transitions",
    ["from_status", "to_status"]
)

INVOICES_RECORDED = Counter(
    "ledgerline_invoices_recorded_total",
    "Invoices recorded per provider",
    ["provider", "kind"]
)

# --- Gateways ---
GATEWAY_CALLS = Counter(
    "ledgerline_gateway_calls_total",
    "Payment gateway calls by outcome",
    ["provider", "operation", "outcome"]  # outcome: success, failure, timeout
)

GATEWAY_LATENCY = Histogram(
    "ledgerline_gateway_latency_seconds",
    "Latency of payment gateway calls",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30)
)

# --- Webhooks ---
WEBHOOKS_RECEIVED = Counter(
    "ledgerline_webhooks_received_total",
    "Inbound gateway webhooks by outcome",
    ["provider", "outcome"]  # processed, duplicate, ignored, rejected
)

# --- Scheduler ---
SCHEDULER_JOB_RUNS = Counter(
    "ledgerline_scheduler_job_runs_total",
    "Total number of scheduled job runs",
    ["job_name", "status"]
)

SCHEDULER_JOB_DURATION = Histogram(
    "ledgerline_scheduler_job_duration_seconds",
    "Duration of scheduled jobs in seconds",
    ["job_name"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600)
)

NOTIFICATION_FAILURES = Counter(
    "ledgerline_notification_failures_total",
    "Notifications that could not be delivered",
    ["kind"]
)

UNAPPLIED_CHARGES = Counter(
    "ledgerline_unapplied_charges_total",
    "Captured charges whose subscription changed before they could be applied",
    ["provider", "kind"]
)
