"""
Prometheus metrics for settlement monitoring.

Tracks:
- STK push initiations by outcome
- Daraja API call counts and duration
- Access token refreshes
- Callback deliveries by outcome
- Enrollments granted
- Reconciliation runs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Initiation metrics
stk_push_requests_total = Counter(
    "stk_push_requests_total",
    "Total number of STK push initiations",
    ["outcome"],  # accepted, rejected, configuration, auth, error
)

stk_push_amount = Histogram(
    "stk_push_amount",
    "Requested STK push amounts",
    buckets=(10, 50, 100, 500, 1000, 5000, 10000, 50000, 150000),
)

# Daraja API metrics
daraja_api_requests_total = Counter(
    "daraja_api_requests_total",
    "Total Daraja API requests",
    ["operation", "status"],  # operation: token, stk_push, stk_query
)

daraja_api_duration_seconds = Histogram(
    "daraja_api_duration_seconds",
    "Daraja API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

access_token_refreshes_total = Counter(
    "access_token_refreshes_total",
    "Total access token refresh attempts",
    ["status"],  # success, failed
)

# Callback metrics
mpesa_callbacks_total = Counter(
    "mpesa_callbacks_total",
    "Total M-Pesa callbacks received",
    ["outcome"],  # succeeded, declined, duplicate, rejected, error
)

mpesa_callback_duration_seconds = Histogram(
    "mpesa_callback_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Enrollment metrics
enrollments_granted_total = Counter(
    "enrollments_granted_total",
    "Total enrollment grants",
    ["source", "created"],  # created: true, false (already enrolled)
)

# Reconciliation metrics
reconciliation_requests_checked_total = Counter(
    "reconciliation_requests_checked_total",
    "Pending requests checked against the STK query endpoint",
    ["outcome"],  # succeeded, failed, still_pending, error
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_stk_push(outcome: str, amount: int | None = None) -> None:
        """Record an STK push initiation."""
        stk_push_requests_total.labels(outcome=outcome).inc()
        if amount:
            stk_push_amount.observe(amount)

    @staticmethod
    def record_daraja_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a Daraja API call."""
        daraja_api_requests_total.labels(operation=operation, status=status).inc()
        daraja_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_token_refresh(status: str) -> None:
        access_token_refreshes_total.labels(status=status).inc()

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        mpesa_callbacks_total.labels(outcome=outcome).inc()
        mpesa_callback_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_enrollment(source: str, created: bool) -> None:
        enrollments_granted_total.labels(source=source, created=str(created).lower()).inc()

    @staticmethod
    def record_reconciliation(summary: dict[str, int]) -> None:
        """Record the outcome counts of one reconciliation run."""
        for outcome in ("succeeded", "failed", "still_pending", "errors"):
            count = summary.get(outcome, 0)
            if count:
                label = "error" if outcome == "errors" else outcome
                reconciliation_requests_checked_total.labels(outcome=label).inc(count)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
