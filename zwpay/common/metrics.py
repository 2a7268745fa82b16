"""Prometheus metric definitions for the payments service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_requests_total = Counter(
    "payment_requests_total",
    "Total orchestration requests",
    ["service", "operation", "provider"],
)
payment_failure_total = Counter(
    "payment_failure_total",
    "Total orchestration requests that ended in an error",
    ["service", "operation", "error_code"],
)
provider_call_seconds = Histogram(
    "provider_call_seconds",
    "Latency of calls to external payment providers",
    ["service", "provider", "operation"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Verified provider webhook events by normalized type",
    ["service", "provider", "event_type"],
)
reconciliation_failures_total = Counter(
    "reconciliation_failures_total",
    "Webhook/poll events that referenced an intent with no matching transaction",
    ["service", "provider"],
)
stale_transitions_skipped_total = Counter(
    "stale_transitions_skipped_total",
    "Status events ignored because the transaction already left pending",
    ["service", "provider"],
)
payment_methods_saved_total = Counter(
    "payment_methods_saved_total",
    "Payment methods remembered for customers",
    ["service", "provider"],
)
orphaned_intents_total = Counter(
    "orphaned_intents_total",
    "Provider-side intents or charges left without a local transaction",
    ["service", "provider", "operation"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
