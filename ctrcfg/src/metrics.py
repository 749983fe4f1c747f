from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue-related series carry a ``queue`` label (``containerruntimeconfig`` or
    ``image``) so the two dispatch queues can be alerted on independently.
    """

    syncs_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_syncs_total",
            "Total synchronization passes by queue and result",
            ["queue", "result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ctrcfg_sync_duration_seconds",
            "Seconds spent in one synchronization pass",
            ["queue"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_requeues_total",
            "Total rate-limited re-adds after a failed synchronization",
            ["queue"],
        )
    )
    dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_dropped_total",
            "Total keys dropped from the rate limiter after exhausting retries",
            ["queue"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "ctrcfg_queue_depth",
            "Current number of keys waiting in a dispatch queue",
            ["queue"],
        )
    )
    unhandled_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_unhandled_errors_total",
            "Total errors surfaced to the process-wide error sink",
        )
    )
    artifacts_written_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_machineconfigs_written_total",
            "Total MachineConfig create/update operations",
            ["owner", "operation"],
        )
    )
    artifacts_skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_machineconfigs_skipped_total",
            "Total MachineConfig regenerations skipped as already current",
            ["owner"],
        )
    )
    status_update_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_status_update_failures_total",
            "Total failed ContainerRuntimeConfig status writes",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "ctrcfg_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "ctrcfg_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ctrcfg_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ctrcfg",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
