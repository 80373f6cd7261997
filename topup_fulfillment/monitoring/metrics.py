"""
Prometheus metrics for top-up fulfillment monitoring.

Tracks:
- Delivery attempts by provider and outcome
- Fulfillment ticks by terminal/non-terminal outcome
- Attempt lock acquisitions
- Retry jobs scheduled
- Stripe API calls and errors
- Recurring schedule runs
"""
from prometheus_client import Counter, Gauge, Histogram

# Delivery metrics
delivery_attempts_total = Counter(
    "topup_delivery_attempts_total",
    "Total delivery provider calls",
    ["provider", "status"],
)

delivery_attempt_duration_seconds = Histogram(
    "topup_delivery_attempt_duration_seconds",
    "Delivery provider call duration in seconds",
    ["provider"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
)

fulfillment_ticks_total = Counter(
    "topup_fulfillment_ticks_total",
    "Total fulfillment ticks by result",
    ["result"],  # delivered, retry_scheduled, failed_terminal, locked, stale, ineligible
)

# Retry metrics
retries_scheduled_total = Counter(
    "topup_retries_scheduled_total",
    "Total retry jobs enqueued",
    ["try_number"],
)

retry_duplicates_total = Counter(
    "topup_retry_duplicates_total",
    "Retry jobs dropped because the job id already existed",
)

queue_depth = Gauge(
    "topup_queue_depth",
    "Jobs not yet finished per queue",
    ["queue"],
)

# Lock metrics
attempt_lock_acquisitions_total = Counter(
    "topup_attempt_lock_acquisitions_total",
    "Total attempt lock acquisitions",
    ["status"],  # acquired, contended
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Recurring metrics
recurring_schedules_enqueued_total = Counter(
    "recurring_schedules_enqueued_total",
    "Total recurring run jobs enqueued by the scanner",
)

recurring_runs_total = Counter(
    "recurring_runs_total",
    "Total recurring runs by result",
    ["result"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_delivery_attempt(provider: str, status: str, duration_seconds: float) -> None:
        """Record a delivery provider call."""
        delivery_attempts_total.labels(provider=provider, status=status).inc()
        delivery_attempt_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_tick(result: str) -> None:
        """Record the result of one fulfillment tick."""
        fulfillment_ticks_total.labels(result=result).inc()

    @staticmethod
    def record_retry_scheduled(try_number: int, created: bool) -> None:
        """Record a retry scheduling request."""
        if created:
            retries_scheduled_total.labels(try_number=str(try_number)).inc()
        else:
            retry_duplicates_total.inc()

    @staticmethod
    def set_queue_depth(queue: str, depth: int) -> None:
        queue_depth.labels(queue=queue).set(depth)

    @staticmethod
    def record_attempt_lock(status: str) -> None:
        """Record attempt lock acquisition."""
        attempt_lock_acquisitions_total.labels(status=status).inc()

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_recurring_enqueued(count: int) -> None:
        recurring_schedules_enqueued_total.inc(count)

    @staticmethod
    def record_recurring_run(result: str) -> None:
        recurring_runs_total.labels(result=result).inc()


# Export singleton instance
metrics = MetricsCollector()
