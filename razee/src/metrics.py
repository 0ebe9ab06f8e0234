from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Cycle counters carry a ``kind`` label so operators can alert on each
    managed resource kind independently.
    """

    cycles_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_reconcile_cycles_total",
            "Total reconciliation cycles started",
            ["kind", "event"],
        )
    )
    cycle_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_reconcile_cycle_errors_total",
            "Total reconciliation cycles that ended with an uncaught error",
            ["kind"],
        )
    )
    suppressed_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_reconcile_suppressed_total",
            "Total cycles whose business logic was skipped because the data hash was unchanged",
            ["kind"],
        )
    )
    aborted_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_reconcile_aborted_total",
            "Total cycles halted by a resourceVersion conflict or an observed deletion",
            ["kind"],
        )
    )
    finalizer_cleanups_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_reconcile_finalizer_cleanups_total",
            "Total finalizer cleanup attempts",
            ["kind", "outcome"],
        )
    )
    child_applies_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_reconcile_child_applies_total",
            "Total child resource applications",
            ["mode", "outcome"],
        )
    )
    children_removed_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_reconcile_children_removed_total",
            "Total children no longer declared, by action taken",
            ["action", "outcome"],
        )
    )
    cache_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_resource_cache_requests_total",
            "Total resource cache lookups",
            ["result"],
        )
    )
    cache_entries: Gauge = field(
        default_factory=lambda: Gauge(
            "razee_resource_cache_entries",
            "Current number of entries in the resource cache",
        )
    )
    active_watches: Gauge = field(
        default_factory=lambda: Gauge(
            "razee_dependency_active_watches",
            "Current number of watches held open for referenced resources",
        )
    )
    tracked_sources: Gauge = field(
        default_factory=lambda: Gauge(
            "razee_dependency_tracked_sources",
            "Current number of referenced resources with at least one parent",
        )
    )
    source_notifications_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_dependency_source_notifications_total",
            "Total parent patches sent after a referenced resource changed",
            ["outcome"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "razee_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "razee_reconcile",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
