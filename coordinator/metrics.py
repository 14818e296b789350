"""
Prometheus metrics: transitions (API + worker), lifecycle event publishing, lock contention.
"""
from prometheus_client import Counter, Histogram, generate_latest

# Engine: transition outcomes
transitions_applied_total = Counter(
    "transitions_applied_total",
    "Total transitions committed",
    ["machine", "to_state"],
)
transitions_rejected_total = Counter(
    "transitions_rejected_total",
    "Total transitions rejected, by error code",
    ["machine", "code"],
)
transitions_replayed_total = Counter(
    "transitions_replayed_total",
    "Total transition requests that matched the already-committed state (no-op)",
    ["machine"],
)

# Notifier: best-effort lifecycle events
lifecycle_events_published_total = Counter(
    "lifecycle_events_published_total",
    "Total lifecycle events handed to the event sink",
    ["machine"],
)
lifecycle_events_failed_total = Counter(
    "lifecycle_events_failed_total",
    "Total lifecycle events the event sink rejected (logged and dropped)",
)

# Guard: per-order lock wait
lock_wait_seconds = Histogram(
    "order_lock_wait_seconds",
    "Time spent waiting for the per-order lock",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0),
)
lock_timeouts_total = Counter(
    "order_lock_timeouts_total",
    "Total lock acquisitions that gave up after the configured timeout",
)

# Worker: transition command processing
commands_processed_total = Counter(
    "commands_processed_total",
    "Total transition commands applied or rejected terminally",
    ["outcome"],
)
commands_retried_total = Counter(
    "commands_retried_total",
    "Total transition commands re-queued after a retryable error",
)
commands_dlq_total = Counter(
    "commands_dlq_total",
    "Total transition commands moved to DLQ after max retries",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
