"""
Prometheus metrics for settlement monitoring.

Tracks:
- Payment events received per channel and outcome
- Idempotency admissions and duplicates
- Engine results per rejection reason
- Side-effect dispatch outcomes and backlog
- Gateway call latency and errors
- Open rejection backlog for operators
"""
import time
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

# Event intake
payment_events_received_total = Counter(
    "payment_events_received_total",
    "Total normalized payment events received",
    ["source_channel", "outcome"],
)

payment_events_invalid_total = Counter(
    "payment_events_invalid_total",
    "Payloads rejected by channel adapters before admission",
    ["source_channel", "error_type"],
)

# Idempotency
payment_event_admissions_total = Counter(
    "payment_event_admissions_total",
    "Idempotency guard decisions",
    ["source_channel", "result"],  # admitted, duplicate
)

# Reconciliation
order_transition_results_total = Counter(
    "order_transition_results_total",
    "Reconciliation engine results",
    ["trigger", "result"],  # applied, noop, duplicate, or a rejection reason
)

payment_rejections_open = Gauge(
    "payment_rejections_open",
    "Unresolved payment rejections awaiting an operator",
    ["reason"],
)

# Side effects
side_effect_dispatch_total = Counter(
    "side_effect_dispatch_total",
    "Side-effect dispatch attempts by final state",
    ["action", "state"],  # succeeded, failed, abandoned
)

side_effect_backlog = Gauge(
    "side_effect_backlog",
    "Dispatch records not yet in a final state",
)

side_effect_sweep_duration_seconds = Histogram(
    "side_effect_sweep_duration_seconds",
    "Dispatch sweep duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Gateways
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Outbound gateway requests",
    ["gateway", "operation", "status"],
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Outbound gateway call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Poll worker
poll_cycle_duration_seconds = Histogram(
    "poll_cycle_duration_seconds",
    "Status poll cycle duration in seconds",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

poll_last_run_timestamp = Gauge(
    "poll_last_run_timestamp",
    "Timestamp of last completed poll cycle",
)

# Retention
dedup_records_purged_total = Counter(
    "dedup_records_purged_total",
    "Dedup records deleted after their retention window",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_event_received(source_channel: str, outcome: str) -> None:
        """Record a normalized event entering the pipeline."""
        payment_events_received_total.labels(source_channel=source_channel, outcome=outcome).inc()

    @staticmethod
    def record_invalid_payload(source_channel: str, error_type: str) -> None:
        """Record a payload an adapter refused."""
        payment_events_invalid_total.labels(
            source_channel=source_channel, error_type=error_type
        ).inc()

    @staticmethod
    def record_admission(source_channel: str, result: str) -> None:
        """Record an idempotency guard decision."""
        payment_event_admissions_total.labels(source_channel=source_channel, result=result).inc()

    @staticmethod
    def record_transition(trigger: str, applied: bool, reason: Optional[str]) -> None:
        """Record an engine result."""
        if applied:
            result = "applied"
        else:
            result = reason or "noop"
        order_transition_results_total.labels(trigger=trigger, result=result).inc()

    @staticmethod
    def set_open_rejections(reason: str, count: int) -> None:
        """Set the open rejection backlog for one reason."""
        payment_rejections_open.labels(reason=reason).set(count)

    @staticmethod
    def record_dispatch(action: str, state: str) -> None:
        """Record a dispatch attempt's final state."""
        side_effect_dispatch_total.labels(action=action, state=state).inc()

    @staticmethod
    def set_dispatch_backlog(depth: int) -> None:
        """Set the dispatch backlog depth."""
        side_effect_backlog.set(depth)

    @staticmethod
    def record_sweep_duration(duration_seconds: float) -> None:
        """Record a dispatch sweep."""
        side_effect_sweep_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_gateway_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record an outbound gateway call."""
        gateway_requests_total.labels(gateway=gateway, operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_poll_cycle(duration_seconds: float) -> None:
        """Record a completed poll cycle."""
        poll_cycle_duration_seconds.observe(duration_seconds)
        poll_last_run_timestamp.set(time.time())

    @staticmethod
    def record_dedup_purge(count: int) -> None:
        """Record purged dedup records."""
        dedup_records_purged_total.inc(count)


# Export singleton instance
metrics = MetricsCollector()
