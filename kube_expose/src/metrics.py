from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes are labelled by ``result`` and object operations by
    ``kind``/``operation``/``result`` so operators can alert on retry storms
    against a specific API without parsing logs.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_expose_reconcile_total",
            "Total reconciles by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "kube_expose_reconcile_duration_seconds",
            "Seconds spent in a single workload reconcile",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    object_operations_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_expose_object_operations_total",
            "Create/delete calls against exposure objects",
            ["kind", "operation", "result"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "kube_expose_queue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_expose_queue_adds_total",
            "Total keys accepted into the work queue",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_expose_queue_retries_total",
            "Total keys re-added with rate-limited backoff",
        )
    )
    dropped_items_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_expose_dropped_items_total",
            "Total keys dropped without retry",
            ["reason"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_expose_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_expose_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    cached_workloads: Gauge = field(
        default_factory=lambda: Gauge(
            "kube_expose_cached_workloads",
            "Number of Deployments currently held in the informer cache",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "kube_expose_build",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
