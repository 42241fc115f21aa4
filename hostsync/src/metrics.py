from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class SyncMetrics:
    """Prometheus metrics exported on ``/metrics``.

    ``passes_total`` is labelled by ``result`` (``success``, ``not_found``,
    ``error``) so operators can alert on a designated Service that has gone
    missing separately from transient API failures.
    """

    passes_total: Counter = field(
        default_factory=lambda: Counter(
            "hostsync_passes_total",
            "Total reconciliation passes by result",
            ["result"],
        )
    )
    writes_total: Counter = field(
        default_factory=lambda: Counter(
            "hostsync_annotation_writes_total",
            "Total updates written to the designated Service",
        )
    )
    parse_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "hostsync_parse_errors_total",
            "Total source annotations that failed to parse",
        )
    )
    notifications_total: Counter = field(
        default_factory=lambda: Counter(
            "hostsync_notifications_total",
            "Total Service change notifications received",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "hostsync_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "hostsync_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    discovered_hosts: Gauge = field(
        default_factory=lambda: Gauge(
            "hostsync_discovered_hosts",
            "Number of distinct hosts found by the last successful pass",
        )
    )
    last_success_timestamp: Gauge = field(
        default_factory=lambda: Gauge(
            "hostsync_last_success_timestamp_seconds",
            "Unix time of the last successful reconciliation pass",
        )
    )
    pass_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "hostsync_pass_duration_seconds",
            "Seconds spent in one reconciliation pass",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "hostsync",
            "Build information for the hostname sync controller",
        )
    )


METRICS = SyncMetrics()
