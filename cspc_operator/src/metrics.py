from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Work-queue series carry a ``name`` label and informer series a
    ``resource`` label so several queues and informers can share a process.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "cspc_operator_reconcile_total",
            "Total CStorPoolCluster reconciliations by result",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "cspc_operator_reconcile_duration_seconds",
            "Seconds spent in a single CStorPoolCluster reconciliation",
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "cspc_operator_workqueue_depth",
            "Current number of items waiting in the work queue",
            ["name"],
        )
    )
    workqueue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "cspc_operator_workqueue_adds_total",
            "Total items added to the work queue",
            ["name"],
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "cspc_operator_workqueue_retries_total",
            "Total rate-limited requeues after failed reconciliations",
            ["name"],
        )
    )
    informer_watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cspc_operator_informer_watch_errors_total",
            "Total informer list/watch errors",
            ["resource"],
        )
    )
    informer_relists_total: Counter = field(
        default_factory=lambda: Counter(
            "cspc_operator_informer_relists_total",
            "Total informer re-lists after an expired resource version",
            ["resource"],
        )
    )
    cache_sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "cspc_operator_cache_sync_duration_seconds",
            "Seconds spent waiting for informer caches to sync at startup",
            buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "cspc_operator_events_total",
            "Total Kubernetes events emitted by type and outcome",
            ["type", "outcome"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "cspc_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
