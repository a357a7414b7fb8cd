from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile counters carry an ``outcome`` label so operators can tell
    stable passes from the drift conditions that restarted the process.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterlink_reconcile_total",
            "Total ClientConfig reconciliations by outcome",
            ["outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterlink_reconcile_errors_total",
            "Total ClientConfig reconciliations that failed and were requeued",
        )
    )
    drift_shutdowns_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterlink_drift_shutdowns_total",
            "Total process shutdowns requested because the cluster topology drifted",
        )
    )
    bootstrap_clusters: Gauge = field(
        default_factory=lambda: Gauge(
            "clusterlink_bootstrap_clusters",
            "Number of remote clusters constructed at bootstrap",
        )
    )
    bootstrap_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "clusterlink_bootstrap_duration_seconds",
            "Seconds spent constructing the remote cluster topology",
            buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "clusterlink_queue_depth",
            "Current number of ClientConfig keys waiting to be reconciled",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterlink_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterlink_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterlink_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "clusterlink_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "clusterlink_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "clusterlink",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
