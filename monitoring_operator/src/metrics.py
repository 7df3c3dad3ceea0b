from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Reconcile metrics carry a ``controller`` label (``collection``,
    ``operator-config`` or ``rules``) so a failing pipeline can be told apart
    from the others sharing the same work queue key.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "monitoring_operator_reconcile_total",
            "Total reconcile runs",
            ["controller"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "monitoring_operator_reconcile_errors_total",
            "Total reconcile runs that failed and were requeued",
            ["controller"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "monitoring_operator_reconcile_duration_seconds",
            "Seconds spent in one reconcile run",
            ["controller"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "monitoring_operator_queue_depth",
            "Keys currently waiting in the work queue",
            ["controller"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "monitoring_operator_queue_retries_total",
            "Total keys re-added with rate limiting after a failure",
            ["controller"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "monitoring_operator_watch_errors_total",
            "Total Kubernetes watch errors",
            ["source"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "monitoring_operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["source"],
        )
    )
    secret_watch_restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "monitoring_operator_secret_watch_restarts_total",
            "Total secret watch reopen attempts after an unexpected close",
        )
    )
    secrets_total: Gauge = field(
        default_factory=lambda: Gauge(
            "monitoring_operator_secrets_total",
            "Secrets currently referenced by the applied configuration",
        )
    )
    failed_secret_configs: Gauge = field(
        default_factory=lambda: Gauge(
            "monitoring_operator_failed_secret_configs",
            "Secret configs rejected by the last apply (e.g. duplicate names)",
        )
    )
    ca_bundle_publish_total: Counter = field(
        default_factory=lambda: Counter(
            "monitoring_operator_ca_bundle_publish_total",
            "Total CA bundle writes into webhook configurations",
            ["kind", "result"],
        )
    )
    admission_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "monitoring_operator_admission_requests_total",
            "Total admission requests by operation, resource and outcome",
            ["operation", "resource", "allowed"],
        )
    )
    webhook_request_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "monitoring_operator_webhook_request_duration_seconds",
            "Webhook request latency in seconds",
            ["route", "status"],
        )
    )
    webhook_requests_in_flight: Gauge = field(
        default_factory=lambda: Gauge(
            "monitoring_operator_webhook_requests_in_flight",
            "Webhook requests currently being served",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "monitoring_operator_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "monitoring_operator_leader_state",
            "Whether this operator replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "monitoring_operator_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "monitoring_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
